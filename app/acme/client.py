#!/usr/bin/env python3
#
# app/acme/client.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Lightweight ACME v2 client (RFC 8555) over httpx.

JWS requests are signed with an ES256 account key. Until the account URL is
known the JWK is embedded, afterwards the ``kid`` header is used. CA problem
documents are mapped onto the :mod:`app.errors` certificate hierarchy.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import json
import logging
import re
from pathlib import Path
from typing import Any, Optional

import httpx
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature
from cryptography.x509.oid import NameOID

from ..errors import (
	CertificateError,
	DomainVerificationFailed,
	NetworkError,
	OrderExpired,
	RateLimited,
)
from ..proxy.constants import atomic_write_text

_log = logging.getLogger(__name__)

_PROBLEM_PREFIX = "urn:ietf:params:acme:error:"
# Problem types that mean the CA could not validate control of the domain
_VALIDATION_PROBLEMS = frozenset({
	"unauthorized", "connection", "dns", "incorrectResponse", "caa", "tls", "rejectedIdentifier",
})


def b64url(data: bytes) -> str:
	"""Base64url encode without padding."""
	return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def jwk_thumbprint(jwk: dict) -> str:
	"""Calculate JWK thumbprint (RFC 7638)."""
	if jwk.get("kty") == "EC":
		canonical = {"crv": jwk["crv"], "kty": "EC", "x": jwk["x"], "y": jwk["y"]}
	elif jwk.get("kty") == "RSA":
		canonical = {"e": jwk["e"], "kty": "RSA", "n": jwk["n"]}
	else:
		raise ValueError(f"Unsupported key type: {jwk.get('kty')}")
	canonical_json = json.dumps(canonical, separators=(",", ":"), sort_keys=True)
	return b64url(hashlib.sha256(canonical_json.encode("utf-8")).digest())


def account_dir_name(email: str) -> str:
	"""Directory name holding the account key for one contact email."""
	return re.sub(r"[^a-z0-9._@+-]", "_", email.strip().lower()) or "_default"


def _problem(resp: httpx.Response) -> dict[str, Any]:
	try:
		body = resp.json()
	except ValueError:
		return {"detail": resp.text}
	return body if isinstance(body, dict) else {"detail": resp.text}


def _json_body(resp: httpx.Response, what: str, domain: str | None = None) -> dict[str, Any]:
	"""Decode a CA response that must be a JSON object."""
	try:
		body = resp.json()
	except ValueError:
		body = None
	if not isinstance(body, dict):
		raise NetworkError(f"{what}: malformed response from CA", domain=domain, detail=resp.text[:200])
	return body


def _problem_text(problem: dict[str, Any]) -> str:
	detail = problem.get("detail") or ""
	ptype = problem.get("type") or ""
	if detail and ptype:
		return f"{detail} ({ptype})"
	return detail or ptype or "unknown ACME error"


def error_from_problem(problem: dict[str, Any], what: str, *, domain: str | None = None, status: int | None = None, retry_after: str | None = None) -> CertificateError:
	"""Map an ACME problem document (or HTTP status) to an exception."""
	ptype = str(problem.get("type") or "")
	short = ptype[len(_PROBLEM_PREFIX):] if ptype.startswith(_PROBLEM_PREFIX) else ptype
	text = _problem_text(problem)
	if status == 429 or short == "rateLimited":
		return RateLimited(f"{what}: rate limited by CA", domain=domain, detail=text, retry_after=retry_after)
	if short in _VALIDATION_PROBLEMS:
		return DomainVerificationFailed(f"{what}: domain validation failed", domain=domain, detail=text)
	if status == 404:
		return OrderExpired(f"{what}: order no longer available", domain=domain, detail=text)
	if status is not None and status >= 500:
		return NetworkError(f"{what}: CA unavailable (HTTP {status})", domain=domain, detail=text)
	return CertificateError(f"{what} failed", domain=domain, detail=text)


class ACMEClient:
	"""ACME v2 client bound to one account directory.

	Usage::

		async with ACMEClient(url, account_dir) as client:
			await client.register_or_fetch_account(email)
			order_url, order = await client.new_order(domain)
	"""

	def __init__(
		self,
		directory_url: str,
		account_dir: Path,
		*,
		timeout: float = 30.0,
		retries: int = 3,
		retry_delay: float = 1.0,
		transport: httpx.AsyncBaseTransport | None = None,
	):
		self.directory_url = directory_url
		self.account_dir = account_dir
		self.directory: dict = {}
		self.nonce: Optional[str] = None
		self.account_key: Optional[ec.EllipticCurvePrivateKey] = None
		self.account_url: Optional[str] = None
		self.http_client: Optional[httpx.AsyncClient] = None
		self._timeout = timeout
		self._retries = max(1, retries)
		self._retry_delay = retry_delay
		self._transport = transport

		self.account_key_path = account_dir / "account_key.pem"
		self.account_url_path = account_dir / "account_url.txt"
		self.account_thumbprint_path = account_dir / "account_thumbprint.txt"

	async def __aenter__(self) -> ACMEClient:
		self.http_client = httpx.AsyncClient(timeout=self._timeout, transport=self._transport)
		return self

	async def __aexit__(self, *args) -> None:
		if self.http_client:
			await self.http_client.aclose()
			self.http_client = None

	# ------------------------------------------------------------------
	# transport
	# ------------------------------------------------------------------

	async def _backoff(self, attempt: int) -> None:
		await asyncio.sleep(self._retry_delay * (2 ** attempt))

	async def _get(self, url: str, what: str) -> httpx.Response:
		"""Unsigned GET with network-error retries."""
		if not self.http_client:
			raise RuntimeError("HTTP client not initialized")
		last_exc: Exception | None = None
		for attempt in range(self._retries):
			try:
				return await self.http_client.get(url)
			except httpx.TransportError as exc:
				last_exc = exc
				_log.warning("ACME_NETWORK what=%s attempt=%d/%d error=%s", what, attempt + 1, self._retries, exc)
				if attempt + 1 < self._retries:
					await self._backoff(attempt)
		raise NetworkError(f"{what}: CA unreachable", detail=str(last_exc))

	async def _fetch_directory(self) -> None:
		resp = await self._get(self.directory_url, "directory")
		if resp.status_code != 200:
			raise error_from_problem(_problem(resp), "directory", status=resp.status_code)
		self.directory = _json_body(resp, "directory")

	async def _get_nonce(self) -> str:
		if self.nonce:
			nonce, self.nonce = self.nonce, None
			return nonce
		if not self.http_client:
			raise RuntimeError("HTTP client not initialized")
		try:
			resp = await self.http_client.head(self.directory["newNonce"])
			if "Replay-Nonce" in resp.headers:
				return resp.headers["Replay-Nonce"]
		except httpx.TransportError as exc:
			_log.debug("ACME_NONCE head failed, falling back to GET: %s", exc)
		resp = await self._get(self.directory["newNonce"], "nonce")
		if "Replay-Nonce" not in resp.headers:
			raise CertificateError("Failed to obtain ACME nonce")
		return resp.headers["Replay-Nonce"]

	# ------------------------------------------------------------------
	# account key / JWS
	# ------------------------------------------------------------------

	def _load_or_create_account_key(self) -> ec.EllipticCurvePrivateKey:
		if self.account_key_path.exists():
			key = serialization.load_pem_private_key(self.account_key_path.read_bytes(), password=None)
			if isinstance(key, ec.EllipticCurvePrivateKey):
				return key
			raise CertificateError(f"Account key {self.account_key_path} is not an EC key")

		key = ec.generate_private_key(ec.SECP256R1())
		key_pem = key.private_bytes(
			encoding=serialization.Encoding.PEM,
			format=serialization.PrivateFormat.PKCS8,
			encryption_algorithm=serialization.NoEncryption(),
		)
		self.account_dir.mkdir(parents=True, exist_ok=True)
		atomic_write_text(self.account_key_path, key_pem.decode("ascii"), mode=0o600)
		_log.info("ACME_ACCOUNT new key dir=%s", self.account_dir.name)
		return key

	def get_jwk(self) -> dict:
		if not self.account_key:
			raise RuntimeError("Account key not loaded")
		numbers = self.account_key.public_key().public_numbers()
		return {
			"kty": "EC",
			"crv": "P-256",
			"x": b64url(numbers.x.to_bytes(32, "big")),
			"y": b64url(numbers.y.to_bytes(32, "big")),
		}

	def key_authorization(self, token: str) -> str:
		return f"{token}.{jwk_thumbprint(self.get_jwk())}"

	def _sign(self, data: bytes) -> bytes:
		if not self.account_key:
			raise RuntimeError("Account key not loaded")
		r, s = decode_dss_signature(self.account_key.sign(data, ec.ECDSA(hashes.SHA256())))
		# ES256 signature is r || s, 32 bytes each
		return r.to_bytes(32, "big") + s.to_bytes(32, "big")

	def _jws(self, url: str, payload: Optional[dict], nonce: str) -> dict:
		protected: dict[str, Any] = {"alg": "ES256", "nonce": nonce, "url": url}
		if self.account_url:
			protected["kid"] = self.account_url
		else:
			protected["jwk"] = self.get_jwk()
		protected_b64 = b64url(json.dumps(protected).encode("utf-8"))
		payload_b64 = "" if payload is None else b64url(json.dumps(payload).encode("utf-8"))
		signature = self._sign(f"{protected_b64}.{payload_b64}".encode("ascii"))
		return {"protected": protected_b64, "payload": payload_b64, "signature": b64url(signature)}

	async def _signed_request(self, url: str, payload: Optional[dict], what: str) -> httpx.Response:
		"""POST a JWS, retrying network errors and bad nonces."""
		if not self.http_client:
			raise RuntimeError("HTTP client not initialized")
		last_exc: Exception | None = None
		for attempt in range(self._retries):
			nonce = await self._get_nonce()
			try:
				resp = await self.http_client.post(
					url,
					content=json.dumps(self._jws(url, payload, nonce)),
					headers={"Content-Type": "application/jose+json"},
				)
			except httpx.TransportError as exc:
				last_exc = exc
				_log.warning("ACME_NETWORK what=%s attempt=%d/%d error=%s", what, attempt + 1, self._retries, exc)
				if attempt + 1 < self._retries:
					await self._backoff(attempt)
				continue
			if "Replay-Nonce" in resp.headers:
				self.nonce = resp.headers["Replay-Nonce"]
			if resp.status_code == 400 and _problem(resp).get("type") == _PROBLEM_PREFIX + "badNonce":
				_log.debug("ACME_NONCE rejected, retrying what=%s", what)
				continue
			return resp
		if last_exc is not None:
			raise NetworkError(f"{what}: CA unreachable", detail=str(last_exc))
		raise CertificateError(f"{what}: CA kept rejecting nonces")

	async def _post(self, url: str, payload: Optional[dict], what: str, *, expected: tuple[int, ...] = (200,), domain: str | None = None) -> httpx.Response:
		resp = await self._signed_request(url, payload, what)
		if resp.status_code not in expected:
			raise error_from_problem(
				_problem(resp), what, domain=domain, status=resp.status_code,
				retry_after=resp.headers.get("Retry-After"),
			)
		return resp

	# ------------------------------------------------------------------
	# protocol steps
	# ------------------------------------------------------------------

	async def register_or_fetch_account(self, email: str) -> str:
		"""Register a new account or reuse the stored one for this key."""
		await self._fetch_directory()
		self.account_key = self._load_or_create_account_key()
		current_thumbprint = jwk_thumbprint(self.get_jwk())

		if self.account_url_path.exists():
			stored = self.account_thumbprint_path.read_text().strip() if self.account_thumbprint_path.exists() else ""
			if stored == current_thumbprint:
				self.account_url = self.account_url_path.read_text().strip()
				_log.debug("ACME_ACCOUNT reuse url=%s", self.account_url)
				return self.account_url
			_log.warning("ACME_ACCOUNT key thumbprint changed, dropping stale account URL")
			self.account_url_path.unlink(missing_ok=True)
			self.account_thumbprint_path.unlink(missing_ok=True)

		payload = {"termsOfServiceAgreed": True, "contact": [f"mailto:{email}"]}
		resp = await self._post(self.directory["newAccount"], payload, "newAccount", expected=(200, 201))
		account_url = resp.headers.get("Location")
		if not account_url:
			raise CertificateError("No account URL in newAccount response")
		self.account_url = account_url
		atomic_write_text(self.account_url_path, account_url)
		atomic_write_text(self.account_thumbprint_path, current_thumbprint)
		_log.info("ACME_ACCOUNT registered url=%s", account_url)
		return account_url

	async def new_order(self, domain: str) -> tuple[str, dict]:
		payload = {"identifiers": [{"type": "dns", "value": domain}]}
		resp = await self._post(self.directory["newOrder"], payload, "newOrder", expected=(201, 200), domain=domain)
		order_url = resp.headers.get("Location")
		if not order_url:
			raise CertificateError("No order URL in newOrder response", domain=domain)
		return order_url, _json_body(resp, "newOrder", domain)

	async def get_authorization(self, auth_url: str, domain: str | None = None) -> dict:
		resp = await self._post(auth_url, None, "authorization", domain=domain)
		return _json_body(resp, "authorization", domain)

	@staticmethod
	def http01_challenge(authorization: dict) -> dict:
		for challenge in authorization.get("challenges", []):
			if challenge.get("type") == "http-01":
				return challenge
		raise CertificateError("No HTTP-01 challenge offered", detail=json.dumps(authorization.get("challenges", [])))

	async def respond_to_challenge(self, challenge_url: str, domain: str | None = None) -> dict:
		resp = await self._post(challenge_url, {}, "challenge", expected=(200, 202), domain=domain)
		return _json_body(resp, "challenge", domain)

	async def poll_authorization(self, auth_url: str, *, domain: str, attempts: int = 30, delay: float = 2.0) -> dict:
		"""Poll until the authorization is valid.

		Raises DomainVerificationFailed when the CA marks it invalid.
		"""
		for attempt in range(attempts):
			authz = await self.get_authorization(auth_url, domain)
			status = authz.get("status")
			if status == "valid":
				return authz
			if status == "invalid":
				detail = "authorization invalid"
				for ch in authz.get("challenges", []):
					if ch.get("error"):
						detail = _problem_text(ch["error"])
						break
				raise DomainVerificationFailed("HTTP-01 validation failed", domain=domain, detail=detail)
			if status in ("expired", "revoked", "deactivated"):
				raise OrderExpired(f"authorization {status}", domain=domain)
			_log.debug("ACME_AUTHZ domain=%s status=%s attempt=%d", domain, status, attempt + 1)
			await asyncio.sleep(delay)
		raise NetworkError("Timed out waiting for authorization", domain=domain)

	async def poll_order(self, order_url: str, *, domain: str, until: tuple[str, ...] = ("ready", "valid"), attempts: int = 30, delay: float = 2.0) -> dict:
		for attempt in range(attempts):
			resp = await self._post(order_url, None, "order", domain=domain)
			order = _json_body(resp, "order", domain)
			status = order.get("status")
			if status in until:
				return order
			if status == "invalid":
				error = order.get("error")
				detail = _problem_text(error) if isinstance(error, dict) else None
				raise OrderExpired("order became invalid", domain=domain, detail=detail)
			if status in ("expired", "revoked"):
				raise OrderExpired(f"order {status}", domain=domain)
			_log.debug("ACME_ORDER domain=%s status=%s attempt=%d", domain, status, attempt + 1)
			await asyncio.sleep(delay)
		raise NetworkError("Timed out waiting for order", domain=domain)

	async def finalize_order(self, finalize_url: str, domain: str) -> tuple[dict, str]:
		"""Send a CSR for a fresh RSA-2048 domain key.

		Returns (order, private key PEM).
		"""
		# CPU-bound, kept off the event loop
		domain_key = await asyncio.to_thread(rsa.generate_private_key, public_exponent=65537, key_size=2048)
		csr = (
			x509.CertificateSigningRequestBuilder()
			.subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)]))
			.add_extension(x509.SubjectAlternativeName([x509.DNSName(domain)]), critical=False)
			.sign(domain_key, hashes.SHA256())
		)
		payload = {"csr": b64url(csr.public_bytes(serialization.Encoding.DER))}
		resp = await self._post(finalize_url, payload, "finalize", expected=(200, 201), domain=domain)
		key_pem = domain_key.private_bytes(
			encoding=serialization.Encoding.PEM,
			format=serialization.PrivateFormat.PKCS8,
			encryption_algorithm=serialization.NoEncryption(),
		).decode("ascii")
		return _json_body(resp, "finalize", domain), key_pem

	async def download_certificate(self, cert_url: str, domain: str | None = None) -> str:
		resp = await self._post(cert_url, None, "certificate", domain=domain)
		return resp.text
