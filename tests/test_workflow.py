#!/usr/bin/env python3
#
# tests/test_workflow.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""End-to-end issuance against the in-process CA."""

from __future__ import annotations

import asyncio
import dataclasses
import os
from datetime import timedelta
from pathlib import Path

import pytest

from app.acme.workflow import DomainLock, IssuanceWorkflow
from app.errors import (
	CertificateError,
	ConcurrencyError,
	DomainVerificationFailed,
	NetworkError,
	RateLimited,
	ValidationError,
)
from app.models.certificates import IssuanceStep
from app.utils.events import CertificateIssued, CertificateRenewed, IssuanceFailed
from fake_ca import challenge_server, issue_pair

DOMAIN = "app.example.com"


def _challenge_files(cfg) -> list[str]:
	challenge_dir = Path(cfg.acme_webroot) / ".well-known" / "acme-challenge"
	return os.listdir(challenge_dir) if challenge_dir.exists() else []


class TestIssue:
	"""Successful issuance walks every step and stores the result."""

	async def test_issue_certificate(self, workflow, store, fake_ca, bus, cfg):
		issued = []
		bus.subscribe(CertificateIssued, issued.append)

		cert = await workflow.issue_certificate(DOMAIN)

		assert cert.domain == DOMAIN
		assert cert.is_acme is True
		assert cert.email == "ops@example.com"
		assert cert.id.startswith("le-app-example-com-")
		assert 88 <= cert.days_remaining() <= 90
		assert Path(cert.cert_path).exists()
		assert cert.chain_pem is not None
		assert store.get(cert.id) == cert

		state = workflow.get_state(DOMAIN)
		assert state.step == IssuanceStep.ISSUED
		assert state.cert_id == cert.id
		assert state.order_url.startswith("https://ca.test/order/")
		assert not workflow.in_flight(DOMAIN)

		assert [(e.cert_id, e.domain) for e in issued] == [(cert.id, DOMAIN)]
		assert _challenge_files(cfg) == []
		assert fake_ca.order_count == 1

	async def test_domain_is_normalized(self, workflow):
		cert = await workflow.issue_certificate("App.Example.COM.")
		assert cert.domain == DOMAIN
		assert workflow.get_state("APP.example.com") is not None

	async def test_explicit_email_wins(self, workflow):
		cert = await workflow.issue_certificate(DOMAIN, "admin@example.com")
		assert cert.email == "admin@example.com"

	async def test_concurrent_requests_share_one_order(self, workflow, fake_ca, store):
		first, second = await asyncio.gather(
			workflow.issue_certificate(DOMAIN),
			workflow.issue_certificate(DOMAIN),
		)
		assert first.id == second.id
		assert fake_ca.order_count == 1
		assert len(store.list_certificates()) == 1

	async def test_different_domains_run_independently(self, workflow, fake_ca):
		a, b = await asyncio.gather(
			workflow.issue_certificate("a.example.com"),
			workflow.issue_certificate("b.example.com"),
		)
		assert {a.domain, b.domain} == {"a.example.com", "b.example.com"}
		assert fake_ca.order_count == 2
		assert [s.domain for s in workflow.list_states()] == ["a.example.com", "b.example.com"]

	async def test_account_is_reused(self, workflow, fake_ca):
		await workflow.issue_certificate("a.example.com")
		await workflow.issue_certificate("b.example.com")
		assert len(fake_ca.accounts) == 1


class TestRejected:

	async def test_invalid_domain(self, workflow, fake_ca):
		with pytest.raises(ValidationError):
			await workflow.issue_certificate("not a domain")
		assert fake_ca.requests == []

	async def test_missing_email(self, cfg, store, fake_ca):
		wf = IssuanceWorkflow.from_config(dataclasses.replace(cfg, acme_email=""), store=store, transport=fake_ca.transport)
		with pytest.raises(ValidationError):
			await wf.issue_certificate(DOMAIN)

	async def test_lock_held_elsewhere(self, workflow, cfg, fake_ca, bus):
		failures = []
		bus.subscribe(IssuanceFailed, failures.append)
		other = DomainLock(cfg.certs_dir / ".locks", DOMAIN)
		assert other.acquire()
		try:
			with pytest.raises(ConcurrencyError):
				await workflow.issue_certificate(DOMAIN)
		finally:
			other.release()

		assert fake_ca.requests == []
		assert workflow.get_state(DOMAIN).step == IssuanceStep.FAILED
		assert [f.error_type for f in failures] == ["ConcurrencyError"]

	async def test_lock_released_after_failure(self, workflow, cfg, fake_ca):
		fake_ca.rate_limited.add(DOMAIN)
		with pytest.raises(RateLimited):
			await workflow.issue_certificate(DOMAIN)
		lock = DomainLock(cfg.certs_dir / ".locks", DOMAIN)
		assert lock.acquire()
		lock.release()


class TestFailures:
	"""Failures mark the state FAILED and leave no challenge files behind."""

	async def test_validation_rejected_by_ca(self, workflow, fake_ca, store, cfg):
		fake_ca.fail_validation.add(DOMAIN)
		with pytest.raises(DomainVerificationFailed) as excinfo:
			await workflow.issue_certificate(DOMAIN)

		assert "Invalid response" in excinfo.value.detail
		state = workflow.get_state(DOMAIN)
		assert state.step == IssuanceStep.FAILED
		assert state.error
		assert store.list_certificates() == []
		assert _challenge_files(cfg) == []

	async def test_rate_limited(self, workflow, fake_ca, bus):
		failures = []
		bus.subscribe(IssuanceFailed, failures.append)
		fake_ca.rate_limited.add(DOMAIN)
		with pytest.raises(RateLimited) as excinfo:
			await workflow.issue_certificate(DOMAIN)
		assert excinfo.value.retry_after == "3600"
		assert workflow.get_state(DOMAIN).step == IssuanceStep.FAILED
		assert [f.error_type for f in failures] == ["RateLimited"]

	async def test_self_check_failure_stops_before_responding(self, cfg, store, fake_ca):
		wf = IssuanceWorkflow.from_config(
			cfg,
			store=store,
			transport=fake_ca.transport,
			self_check_transport=challenge_server(cfg.acme_webroot, broken=True),
		)
		with pytest.raises(DomainVerificationFailed):
			await wf.issue_certificate(DOMAIN)
		assert not any(path.startswith("/chall/") for _, path in fake_ca.requests)
		assert _challenge_files(cfg) == []

	async def test_self_check_can_be_disabled(self, cfg, store, fake_ca):
		wf = IssuanceWorkflow.from_config(
			dataclasses.replace(cfg, acme_self_check=False),
			store=store,
			transport=fake_ca.transport,
			self_check_transport=challenge_server(cfg.acme_webroot, broken=True),
		)
		cert = await wf.issue_certificate(DOMAIN)
		assert cert.domain == DOMAIN

	async def test_retry_after_failure_starts_fresh(self, workflow, fake_ca):
		fake_ca.rate_limited.add(DOMAIN)
		with pytest.raises(RateLimited):
			await workflow.issue_certificate(DOMAIN)
		fake_ca.rate_limited.clear()
		cert = await workflow.issue_certificate(DOMAIN)
		assert workflow.get_state(DOMAIN).step == IssuanceStep.ISSUED
		assert cert.domain == DOMAIN

	async def test_malformed_ca_response(self, workflow, fake_ca, bus):
		failures = []
		bus.subscribe(IssuanceFailed, failures.append)
		fake_ca.garbled_authz.add(DOMAIN)

		with pytest.raises(NetworkError) as excinfo:
			await workflow.issue_certificate(DOMAIN)

		assert "gateway" in excinfo.value.detail
		assert workflow.get_state(DOMAIN).step == IssuanceStep.FAILED
		assert [f.error_type for f in failures] == ["NetworkError"]


class TestRenew:

	async def test_renew_keeps_id(self, workflow, fake_ca, store, bus):
		renewed = []
		bus.subscribe(CertificateRenewed, renewed.append)
		original = await workflow.issue_certificate(DOMAIN)

		fake_ca.validity = timedelta(days=120)
		cert = await workflow.renew_certificate(DOMAIN, original.id)

		assert cert.id == original.id
		assert cert.cert_path == original.cert_path
		assert cert.expires_at > original.expires_at
		assert cert.private_key_pem != original.private_key_pem
		assert len(store.list_certificates()) == 1
		assert workflow.get_state(DOMAIN).renewal is True
		assert [e.cert_id for e in renewed] == [original.id]

	async def test_renew_external_certificate(self, workflow, store):
		fullchain, key = issue_pair(DOMAIN, expires_in=timedelta(days=10))
		external = store.import_certificate(fullchain, key)
		with pytest.raises(ValidationError):
			await workflow.renew_certificate(DOMAIN, external.id)

	async def test_renew_wrong_domain(self, workflow):
		original = await workflow.issue_certificate(DOMAIN)
		with pytest.raises(ValidationError):
			await workflow.renew_certificate("other.example.com", original.id)

	async def test_failed_renewal_keeps_old_material(self, workflow, fake_ca, store, bus):
		failures = []
		bus.subscribe(IssuanceFailed, failures.append)
		original = await workflow.issue_certificate(DOMAIN)
		fake_ca.fail_validation.add(DOMAIN)

		with pytest.raises(DomainVerificationFailed):
			await workflow.renew_certificate(DOMAIN, original.id)

		assert store.get(original.id).certificate_pem == original.certificate_pem
		assert failures[0].cert_id == original.id

	async def test_local_io_failure_becomes_certificate_error(self, workflow, fake_ca, store):
		original = await workflow.issue_certificate(DOMAIN)
		chain = Path(original.chain_path)
		chain.unlink()
		chain.mkdir()
		(chain / "blocker").write_text("x")
		fake_ca.validity = timedelta(days=120)

		with pytest.raises(CertificateError) as excinfo:
			await workflow.renew_certificate(DOMAIN, original.id)

		assert isinstance(excinfo.value.__cause__, OSError)
		assert workflow.get_state(DOMAIN).step == IssuanceStep.FAILED
		current = store.get(original.id)
		assert current.expires_at == original.expires_at
		assert current.private_key_pem == original.private_key_pem

	async def test_renewal_does_not_join_a_fresh_issuance(self, workflow, fake_ca, store):
		fullchain, key = issue_pair(DOMAIN, expires_in=timedelta(days=5))
		old = store.save("le-app-old", DOMAIN, fullchain, key, email="ops@example.com")

		issued, renewed = await asyncio.gather(
			workflow.issue_certificate(DOMAIN),
			workflow.renew_certificate(DOMAIN, old.id),
		)

		assert issued.id != old.id
		assert renewed.id == old.id
		assert renewed.expires_at > old.expires_at
		assert store.get(old.id).expires_at == renewed.expires_at
		assert fake_ca.order_count == 2

	async def test_concurrent_renewals_of_one_certificate_share_an_order(self, workflow, fake_ca):
		original = await workflow.issue_certificate(DOMAIN)
		first, second = await asyncio.gather(
			workflow.renew_certificate(DOMAIN, original.id),
			workflow.renew_certificate(DOMAIN, original.id),
		)
		assert first.id == second.id == original.id
		assert fake_ca.order_count == 2
