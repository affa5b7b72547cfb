#!/usr/bin/env python3
#
# tests/test_acme_client.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""ACME client: problem mapping, account handling and transport retries."""

from __future__ import annotations

import pytest

from app.acme.client import ACMEClient, account_dir_name, error_from_problem, jwk_thumbprint
from app.errors import (
	CertificateError,
	DomainVerificationFailed,
	NetworkError,
	OrderExpired,
	RateLimited,
)
from fake_ca import DIRECTORY_URL, PROBLEM, FakeCA


def _client(fake_ca: FakeCA, account_dir, **kwargs) -> ACMEClient:
	return ACMEClient(DIRECTORY_URL, account_dir, retry_delay=0.0, transport=fake_ca.transport, **kwargs)


class TestProblemMapping:
	"""CA problem documents map onto the certificate error hierarchy."""

	def test_rate_limited_by_type(self):
		exc = error_from_problem({"type": PROBLEM + "rateLimited", "detail": "slow down"}, "newOrder", retry_after="60")
		assert isinstance(exc, RateLimited)
		assert exc.retry_after == "60"
		assert "slow down" in exc.detail

	def test_rate_limited_by_status(self):
		assert isinstance(error_from_problem({}, "newOrder", status=429), RateLimited)

	@pytest.mark.parametrize("kind", ["unauthorized", "connection", "dns", "incorrectResponse", "caa"])
	def test_validation_problems(self, kind):
		exc = error_from_problem({"type": PROBLEM + kind}, "challenge", domain="a.example.com")
		assert isinstance(exc, DomainVerificationFailed)
		assert exc.domain == "a.example.com"

	def test_server_errors_are_network_errors(self):
		assert isinstance(error_from_problem({"type": PROBLEM + "serverInternal"}, "order", status=503), NetworkError)

	def test_missing_order(self):
		assert isinstance(error_from_problem({}, "order", status=404), OrderExpired)

	def test_fallback(self):
		exc = error_from_problem({"type": PROBLEM + "malformed", "detail": "bad csr"}, "finalize", status=400)
		assert type(exc) is CertificateError
		assert exc.detail == f"bad csr ({PROBLEM}malformed)"


class TestThumbprint:

	def test_ignores_member_order_and_extras(self):
		jwk = {"kty": "EC", "crv": "P-256", "x": "abc", "y": "def"}
		shuffled = {"y": "def", "x": "abc", "kid": "ignored", "crv": "P-256", "kty": "EC"}
		assert jwk_thumbprint(jwk) == jwk_thumbprint(shuffled)
		assert len(jwk_thumbprint(jwk)) == 43

	def test_unsupported_key_type(self):
		with pytest.raises(ValueError):
			jwk_thumbprint({"kty": "oct", "k": "secret"})

	def test_account_dir_name(self):
		assert account_dir_name(" Ops@Example.com ") == "ops@example.com"
		assert account_dir_name("a/b@example.com") == "a_b@example.com"


class TestAccount:

	async def test_registers_once_and_reuses(self, fake_ca, tmp_path):
		account_dir = tmp_path / "acct"
		async with _client(fake_ca, account_dir) as client:
			first = await client.register_or_fetch_account("ops@example.com")
			thumbprint = jwk_thumbprint(client.get_jwk())
		async with _client(fake_ca, account_dir) as client:
			second = await client.register_or_fetch_account("ops@example.com")
			assert jwk_thumbprint(client.get_jwk()) == thumbprint

		assert first == second
		assert len(fake_ca.accounts) == 1
		assert fake_ca.accounts["1"]["contact"] == ["mailto:ops@example.com"]
		assert (account_dir / "account_key.pem").exists()

	async def test_stale_thumbprint_reregisters(self, fake_ca, tmp_path):
		account_dir = tmp_path / "acct"
		async with _client(fake_ca, account_dir) as client:
			await client.register_or_fetch_account("ops@example.com")
		(account_dir / "account_thumbprint.txt").write_text("stale")
		async with _client(fake_ca, account_dir) as client:
			await client.register_or_fetch_account("ops@example.com")
		assert len(fake_ca.accounts) == 2

	async def test_key_authorization(self, fake_ca, tmp_path):
		async with _client(fake_ca, tmp_path / "acct") as client:
			await client.register_or_fetch_account("ops@example.com")
			thumbprint = jwk_thumbprint(client.get_jwk())
			assert client.key_authorization("tok") == f"tok.{thumbprint}"


class TestTransport:

	async def test_bad_nonce_is_retried(self, tmp_path):
		fake_ca = FakeCA(bad_nonces=2)
		async with _client(fake_ca, tmp_path / "acct") as client:
			await client.register_or_fetch_account("ops@example.com")
		assert len(fake_ca.accounts) == 1
		assert fake_ca.bad_nonces == 0

	async def test_persistent_bad_nonce_gives_up(self, tmp_path):
		fake_ca = FakeCA(bad_nonces=10)
		async with _client(fake_ca, tmp_path / "acct", retries=2) as client:
			with pytest.raises(CertificateError):
				await client.register_or_fetch_account("ops@example.com")

	async def test_network_errors_are_retried(self, tmp_path):
		fake_ca = FakeCA(network_failures=2)
		async with _client(fake_ca, tmp_path / "acct") as client:
			await client.register_or_fetch_account("ops@example.com")
		assert len(fake_ca.accounts) == 1

	async def test_unreachable_ca(self, tmp_path):
		fake_ca = FakeCA(network_failures=100)
		async with _client(fake_ca, tmp_path / "acct", retries=2) as client:
			with pytest.raises(NetworkError):
				await client.register_or_fetch_account("ops@example.com")

	async def test_rate_limited_order(self, fake_ca, tmp_path):
		fake_ca.rate_limited.add("busy.example.com")
		async with _client(fake_ca, tmp_path / "acct") as client:
			await client.register_or_fetch_account("ops@example.com")
			with pytest.raises(RateLimited) as excinfo:
				await client.new_order("busy.example.com")
		assert excinfo.value.retry_after == "3600"
		assert excinfo.value.domain == "busy.example.com"
