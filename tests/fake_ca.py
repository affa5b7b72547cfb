#!/usr/bin/env python3
#
# tests/fake_ca.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""In-process ACME v2 certificate authority on top of ``httpx.MockTransport``.

Implements just enough of RFC 8555 for the issuance workflow: directory,
nonces, accounts, orders, HTTP-01 authorizations, finalize and certificate
download. JWS signatures are not verified; payloads are decoded.
"""

from __future__ import annotations

import base64
import itertools
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path

import httpx
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

BASE = "https://ca.test"
DIRECTORY_URL = f"{BASE}/directory"
PROBLEM = "urn:ietf:params:acme:error:"


def _b64decode(data: str) -> bytes:
	return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


def _name(cn: str) -> x509.Name:
	return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, cn)])


def make_key() -> ec.EllipticCurvePrivateKey:
	return ec.generate_private_key(ec.SECP256R1())


def key_pem(key) -> str:
	return key.private_bytes(
		serialization.Encoding.PEM,
		serialization.PrivateFormat.PKCS8,
		serialization.NoEncryption(),
	).decode("ascii")


def cert_pem(cert: x509.Certificate) -> str:
	return cert.public_bytes(serialization.Encoding.PEM).decode("ascii")


@dataclass
class Issuer:
	"""A self-signed issuing certificate used to sign leaves."""
	key: ec.EllipticCurvePrivateKey
	cert: x509.Certificate

	@classmethod
	def create(cls, cn: str = "Fake Intermediate R1") -> Issuer:
		key = make_key()
		now = datetime.now(timezone.utc)
		cert = (
			x509.CertificateBuilder()
			.subject_name(_name(cn))
			.issuer_name(_name(cn))
			.public_key(key.public_key())
			.serial_number(x509.random_serial_number())
			.not_valid_before(now - timedelta(days=1))
			.not_valid_after(now + timedelta(days=3650))
			.add_extension(x509.BasicConstraints(ca=True, path_length=0), critical=True)
			.sign(key, hashes.SHA256())
		)
		return cls(key=key, cert=cert)

	def sign(self, domain: str, public_key, *, not_after: datetime, not_before: datetime | None = None) -> x509.Certificate:
		if not_before is None:
			not_before = min(datetime.now(timezone.utc) - timedelta(hours=1), not_after - timedelta(days=1))
		return (
			x509.CertificateBuilder()
			.subject_name(_name(domain))
			.issuer_name(self.cert.subject)
			.public_key(public_key)
			.serial_number(x509.random_serial_number())
			.not_valid_before(not_before)
			.not_valid_after(not_after)
			.add_extension(x509.SubjectAlternativeName([x509.DNSName(domain)]), critical=False)
			.sign(self.key, hashes.SHA256())
		)


def issue_pair(domain: str, *, expires_in: timedelta, issuer: Issuer | None = None) -> tuple[str, str]:
	"""Return (fullchain PEM, private key PEM) for ``domain``."""
	issuer = issuer or Issuer.create()
	key = make_key()
	leaf = issuer.sign(domain, key.public_key(), not_after=datetime.now(timezone.utc) + expires_in)
	return cert_pem(leaf) + cert_pem(issuer.cert), key_pem(key)


@dataclass
class _Order:
	domain: str
	authz_id: str
	finalized: bool = False
	cert_id: str | None = None


@dataclass
class _Authz:
	domain: str
	token: str
	status: str = "pending"
	error: dict | None = None


@dataclass
class FakeCA:
	validity: timedelta = timedelta(days=90)
	# Domains whose HTTP-01 validation the CA rejects
	fail_validation: set[str] = field(default_factory=set)
	# Domains for which newOrder answers 429 rateLimited
	rate_limited: set[str] = field(default_factory=set)
	# Domains whose authorization is answered with a proxy error page
	garbled_authz: set[str] = field(default_factory=set)
	# Number of signed requests to reject with badNonce before accepting
	bad_nonces: int = 0
	# Number of requests to fail with a transport error
	network_failures: int = 0

	def __post_init__(self) -> None:
		self.issuer = Issuer.create()
		self._ids = itertools.count(1)
		self._nonces = itertools.count(1)
		self.accounts: dict[str, dict] = {}
		self.orders: dict[str, _Order] = {}
		self.authzs: dict[str, _Authz] = {}
		self.certs: dict[str, str] = {}
		self.requests: list[tuple[str, str]] = []

	@property
	def transport(self) -> httpx.MockTransport:
		return httpx.MockTransport(self.handle)

	@property
	def order_count(self) -> int:
		return len(self.orders)

	# ------------------------------------------------------------------

	def _json(self, status: int, body: dict, *, location: str | None = None, headers: dict | None = None) -> httpx.Response:
		hdrs = {"Replay-Nonce": f"nonce-{next(self._nonces)}"}
		if location:
			hdrs["Location"] = location
		hdrs.update(headers or {})
		return httpx.Response(status, json=body, headers=hdrs)

	def _problem(self, status: int, kind: str, detail: str, headers: dict | None = None) -> httpx.Response:
		resp = self._json(status, {"type": PROBLEM + kind, "detail": detail}, headers=headers)
		resp.headers["Content-Type"] = "application/problem+json"
		return resp

	def _order_body(self, order_id: str) -> dict:
		order = self.orders[order_id]
		authz = self.authzs[order.authz_id]
		if order.finalized:
			status = "valid"
		elif authz.status == "valid":
			status = "ready"
		elif authz.status == "invalid":
			status = "invalid"
		else:
			status = "pending"
		body = {
			"status": status,
			"identifiers": [{"type": "dns", "value": order.domain}],
			"authorizations": [f"{BASE}/authz/{order.authz_id}"],
			"finalize": f"{BASE}/finalize/{order_id}",
		}
		if order.cert_id:
			body["certificate"] = f"{BASE}/cert/{order.cert_id}"
		return body

	def _authz_body(self, authz_id: str) -> dict:
		authz = self.authzs[authz_id]
		challenge = {
			"type": "http-01",
			"url": f"{BASE}/chall/{authz_id}",
			"token": authz.token,
			"status": authz.status,
		}
		if authz.error:
			challenge["error"] = authz.error
		return {
			"status": authz.status,
			"identifier": {"type": "dns", "value": authz.domain},
			"challenges": [
				{"type": "dns-01", "url": f"{BASE}/chall-dns/{authz_id}", "token": authz.token},
				challenge,
			],
		}

	# ------------------------------------------------------------------

	def handle(self, request: httpx.Request) -> httpx.Response:
		path = request.url.path
		self.requests.append((request.method, path))
		if self.network_failures > 0:
			self.network_failures -= 1
			raise httpx.ConnectError("connection refused", request=request)

		if path == "/directory":
			return httpx.Response(200, json={
				"newNonce": f"{BASE}/new-nonce",
				"newAccount": f"{BASE}/new-account",
				"newOrder": f"{BASE}/new-order",
			})
		if path == "/new-nonce":
			return httpx.Response(200, headers={"Replay-Nonce": f"nonce-{next(self._nonces)}"})

		if request.method != "POST":
			return self._problem(405, "malformed", "method not allowed")
		if self.bad_nonces > 0:
			self.bad_nonces -= 1
			return self._problem(400, "badNonce", "bad nonce")

		jws = json.loads(request.content)
		payload = json.loads(_b64decode(jws["payload"])) if jws["payload"] else None
		kind, _, ident = path.strip("/").partition("/")

		if kind == "new-account":
			account_id = str(next(self._ids))
			self.accounts[account_id] = payload or {}
			return self._json(201, {"status": "valid"}, location=f"{BASE}/acct/{account_id}")

		if kind == "new-order":
			domain = payload["identifiers"][0]["value"]
			if domain in self.rate_limited:
				return self._problem(429, "rateLimited", "too many certificates", headers={"Retry-After": "3600"})
			order_id = str(next(self._ids))
			authz_id = str(next(self._ids))
			self.authzs[authz_id] = _Authz(domain=domain, token=f"token{authz_id}xyz")
			self.orders[order_id] = _Order(domain=domain, authz_id=authz_id)
			return self._json(201, self._order_body(order_id), location=f"{BASE}/order/{order_id}")

		if kind == "authz":
			if self.authzs[ident].domain in self.garbled_authz:
				return httpx.Response(200, text="<html>gateway</html>", headers={"Replay-Nonce": f"nonce-{next(self._nonces)}"})
			return self._json(200, self._authz_body(ident))

		if kind == "chall":
			authz = self.authzs[ident]
			if authz.domain in self.fail_validation:
				authz.status = "invalid"
				authz.error = {"type": PROBLEM + "unauthorized", "detail": f"Invalid response from http://{authz.domain}"}
			else:
				authz.status = "valid"
			return self._json(200, {"type": "http-01", "status": "processing", "token": authz.token})

		if kind == "order":
			return self._json(200, self._order_body(ident))

		if kind == "finalize":
			order = self.orders[ident]
			if self.authzs[order.authz_id].status != "valid":
				return self._problem(403, "orderNotReady", "order is not ready")
			csr = x509.load_der_x509_csr(_b64decode(payload["csr"]))
			leaf = self.issuer.sign(
				order.domain, csr.public_key(), not_after=datetime.now(timezone.utc) + self.validity,
			)
			cert_id = str(next(self._ids))
			self.certs[cert_id] = cert_pem(leaf) + cert_pem(self.issuer.cert)
			order.finalized = True
			order.cert_id = cert_id
			return self._json(200, self._order_body(ident), location=f"{BASE}/order/{ident}")

		if kind == "cert":
			return httpx.Response(
				200,
				text=self.certs[ident],
				headers={"Replay-Nonce": f"nonce-{next(self._nonces)}", "Content-Type": "application/pem-certificate-chain"},
			)

		return self._problem(404, "malformed", f"unknown resource {path}")


def challenge_server(webroot, *, broken: bool = False) -> httpx.MockTransport:
	"""Serve ``/.well-known/acme-challenge/<token>`` from ``webroot`` like nginx would."""
	root = Path(webroot)

	def handle(request: httpx.Request) -> httpx.Response:
		if broken:
			return httpx.Response(404, text="not found")
		path = root / request.url.path.lstrip("/")
		if not path.is_file():
			return httpx.Response(404, text="not found")
		return httpx.Response(200, text=path.read_text())

	return httpx.MockTransport(handle)
