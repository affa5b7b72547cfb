#!/usr/bin/env python3
#
# app/acme/store.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Certificate store: PEM files on disk, metadata in SQLite.

Layout per certificate id::

	<certs_dir>/<id>/fullchain.pem   leaf + intermediates (nginx ssl_certificate)
	<certs_dir>/<id>/privkey.pem     0600
	<certs_dir>/<id>/chain.pem       intermediates only, when present

Paths depend only on the id, so renewing in place never requires touching
the rules that reference a certificate.
"""

from __future__ import annotations

import logging
import re
import secrets
import shutil
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.x509.oid import NameOID

from ..db import sqlite_certificates as db
from ..errors import NotFoundError, ValidationError
from ..models.certificates import Certificate
from ..proxy.constants import atomic_write_text, domain_slug

_log = logging.getLogger(__name__)

_PEM_CERT_RE = re.compile(
	r"-----BEGIN CERTIFICATE-----\s.+?-----END CERTIFICATE-----",
	re.DOTALL,
)
_CERT_ID_RE = re.compile(r"^[A-Za-z0-9._-]{1,128}$")


def split_pem_chain(pem: str) -> list[str]:
	"""Split a PEM bundle into individual certificate blocks (input order)."""
	return [m.group(0).strip() + "\n" for m in _PEM_CERT_RE.finditer(pem or "")]


def load_certificate(pem: str) -> x509.Certificate:
	try:
		return x509.load_pem_x509_certificate(pem.encode("ascii"))
	except (ValueError, UnicodeEncodeError) as exc:
		raise ValidationError("invalid certificate PEM", detail=str(exc)) from exc


def certificate_domain(cert: x509.Certificate) -> Optional[str]:
	"""First DNS SAN, falling back to the subject common name."""
	try:
		san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
		names = san.value.get_values_for_type(x509.DNSName)
		if names:
			return names[0].lower()
	except x509.ExtensionNotFound:
		pass
	cns = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
	return str(cns[0].value).lower() if cns else None


def _check_key_matches(cert: x509.Certificate, key_pem: str) -> None:
	try:
		key = serialization.load_pem_private_key(key_pem.encode("ascii"), password=None)
	except (ValueError, TypeError, UnicodeEncodeError) as exc:
		raise ValidationError("invalid private key PEM", detail=str(exc)) from exc
	spki = serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
	if key.public_key().public_bytes(*spki) != cert.public_key().public_bytes(*spki):
		raise ValidationError("private key does not match certificate")


def _read_if_file(path: Path) -> Optional[str]:
	return path.read_text() if path.is_file() else None


def _write_or_remove(path: Path, content: Optional[str], mode: int) -> None:
	if content is None:
		path.unlink(missing_ok=True)
	else:
		atomic_write_text(path, content, mode=mode)


def new_certificate_id(domain: str, *, acme: bool = True) -> str:
	prefix = "le" if acme else "ext"
	return f"{prefix}-{domain_slug(domain.lower())}-{secrets.token_hex(4)}"


class CertificateStore:
	"""Persistent certificate storage (authoritative state)."""

	def __init__(self, conn: sqlite3.Connection, certs_dir: Path):
		self._conn = conn
		self.certs_dir = Path(certs_dir)

	def _dir_for(self, cert_id: str) -> Path:
		if not _CERT_ID_RE.fullmatch(cert_id or "") or cert_id.startswith("."):
			raise ValidationError("invalid certificate id", detail=repr(cert_id))
		return self.certs_dir / cert_id

	def _from_row(self, row: sqlite3.Row) -> Optional[Certificate]:
		cert_path = Path(row["cert_path"])
		key_path = Path(row["key_path"])
		chain_path = Path(row["chain_path"]) if row["chain_path"] else None
		try:
			blocks = split_pem_chain(cert_path.read_text(encoding="ascii"))
			key_pem = key_path.read_text(encoding="ascii")
		except OSError as exc:
			_log.warning("CERT_STORE files missing id=%s error=%s", row["id"], exc)
			return None
		if not blocks:
			_log.warning("CERT_STORE empty certificate file id=%s", row["id"])
			return None
		return Certificate(
			id=row["id"],
			domain=row["domain"],
			certificate_pem=blocks[0],
			private_key_pem=key_pem,
			chain_pem="".join(blocks[1:]) or None,
			expires_at=row["expires_at"],
			issued_at=row["issued_at"],
			is_acme=bool(row["is_acme"]),
			email=row["email"],
			cert_path=str(cert_path),
			key_path=str(key_path),
			chain_path=str(chain_path) if chain_path else None,
			created_at=row["created_at"],
			updated_at=row["updated_at"],
		)

	# ------------------------------------------------------------------
	# queries
	# ------------------------------------------------------------------

	def list_certificates(self) -> list[Certificate]:
		"""All certificates whose files are readable, soonest expiry first."""
		certs = []
		for row in db.list_certificates(self._conn):
			cert = self._from_row(row)
			if cert is not None:
				certs.append(cert)
		return certs

	def get(self, cert_id: str) -> Optional[Certificate]:
		row = db.get_certificate(self._conn, cert_id)
		return self._from_row(row) if row else None

	def require(self, cert_id: str) -> Certificate:
		cert = self.get(cert_id)
		if cert is None:
			raise NotFoundError(f"certificate {cert_id!r} not found")
		return cert

	def get_for_domain(self, domain: str) -> Optional[Certificate]:
		row = db.get_latest_for_domain(self._conn, domain)
		return self._from_row(row) if row else None

	# ------------------------------------------------------------------
	# mutations
	# ------------------------------------------------------------------

	def save(
		self,
		cert_id: str,
		domain: str,
		fullchain_pem: str,
		private_key_pem: str,
		*,
		is_acme: bool = True,
		email: Optional[str] = None,
	) -> Certificate:
		"""Write PEM files atomically and upsert the metadata row.

		``fullchain_pem`` is leaf first, followed by intermediates. Saving
		under an existing id replaces its content in place.
		"""
		blocks = split_pem_chain(fullchain_pem)
		if not blocks:
			raise ValidationError("no certificate found in PEM data")
		leaf = load_certificate(blocks[0])
		_check_key_matches(leaf, private_key_pem)
		expires_at: datetime = leaf.not_valid_after_utc
		issued_at: datetime = leaf.not_valid_before_utc

		cert_dir = self._dir_for(cert_id)
		cert_dir.mkdir(parents=True, exist_ok=True)
		cert_dir.chmod(0o700)
		fullchain_path = cert_dir / "fullchain.pem"
		key_path = cert_dir / "privkey.pem"
		chain_path = cert_dir / "chain.pem"

		files = [
			(key_path, private_key_pem, 0o600),
			(fullchain_path, "".join(blocks), 0o644),
			(chain_path, "".join(blocks[1:]) if len(blocks) > 1 else None, 0o644),
		]
		previous = [(path, _read_if_file(path), mode) for path, _, mode in files]
		try:
			for path, content, mode in files:
				_write_or_remove(path, content, mode)
			db.upsert_certificate(
				self._conn,
				cert_id,
				domain.lower(),
				is_acme=is_acme,
				email=email,
				issued_at=issued_at,
				expires_at=expires_at,
				cert_path=str(fullchain_path),
				key_path=str(key_path),
				chain_path=str(chain_path) if len(blocks) > 1 else None,
			)
		except Exception:
			# Files and row must describe the same certificate
			_log.error("CERT_STORE save failed id=%s, restoring previous files", cert_id)
			for path, content, mode in previous:
				try:
					_write_or_remove(path, content, mode)
				except OSError as exc:
					_log.error("CERT_STORE restore failed path=%s error=%s", path, exc)
			raise
		_log.info("CERT_STORE saved id=%s domain=%s expires_at=%s", cert_id, domain, expires_at.isoformat())
		cert = self.get(cert_id)
		assert cert is not None, "certificate row vanished right after upsert"
		return cert

	def import_certificate(self, certificate_pem: str, private_key_pem: str, chain_pem: Optional[str] = None, domain: Optional[str] = None) -> Certificate:
		"""Store an externally issued certificate (never auto-renewed)."""
		blocks = split_pem_chain(certificate_pem)
		if not blocks:
			raise ValidationError("no certificate found in PEM data")
		leaf = load_certificate(blocks[0])
		resolved = (domain or certificate_domain(leaf) or "").lower()
		if not resolved:
			raise ValidationError("cannot determine the certificate domain; pass it explicitly")
		bundle = "".join(blocks) + "".join(split_pem_chain(chain_pem or ""))
		return self.save(new_certificate_id(resolved, acme=False), resolved, bundle, private_key_pem, is_acme=False)

	def delete(self, cert_id: str) -> bool:
		cert_dir = self._dir_for(cert_id)
		deleted = db.delete_certificate(self._conn, cert_id)
		if cert_dir.exists():
			shutil.rmtree(cert_dir)
			deleted = True
		if deleted:
			_log.info("CERT_STORE deleted id=%s", cert_id)
		return deleted
