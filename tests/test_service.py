#!/usr/bin/env python3
#
# tests/test_service.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Rule changes, certificate lookup and issuance hand-off to the writer."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from app.errors import DomainVerificationFailed, NotFoundError, ValidationError
from app.models.rules import CertificateStatus, RoutingRule
from app.proxy.service import certificate_resolver
from app.utils.events import CertificateIssued
from app.utils.time import utcnow
from fake_ca import issue_pair

DOMAIN = "app.example.com"


def _seed(store, cert_id: str = "le-app", domain: str = DOMAIN, days: int = 60):
	fullchain, key = issue_pair(domain, expires_in=timedelta(days=days))
	return store.save(cert_id, domain, fullchain, key)


async def _drain(manager) -> None:
	await asyncio.gather(*list(manager._background))


class TestResolver:
	"""Which certificate a rule renders with."""

	def test_ssl_disabled(self, store):
		_seed(store)
		resolve = certificate_resolver(store)
		assert resolve(RoutingRule(id="r1", domain=DOMAIN, target="c1:80")) is None

	def test_by_id(self, store):
		_seed(store, "le-one")
		_seed(store, "le-two", days=80)
		resolve = certificate_resolver(store)
		rule = RoutingRule(id="r1", domain=DOMAIN, target="c1:80", ssl_enabled=True, certificate_id="le-one")
		assert resolve(rule).id == "le-one"

	def test_domain_fallback_picks_latest(self, store):
		_seed(store, "le-one")
		_seed(store, "le-two", days=80)
		resolve = certificate_resolver(store)
		assert resolve(RoutingRule(id="r1", domain=DOMAIN, target="c1:80", ssl_enabled=True)).id == "le-two"

	def test_explicit_paths_bypass_store(self, store):
		_seed(store)
		rule = RoutingRule(
			id="r1", domain=DOMAIN, target="c1:80", ssl_enabled=True,
			ssl_cert_path="/etc/ssl/a.pem", ssl_key_path="/etc/ssl/a.key",
		)
		assert certificate_resolver(store)(rule) is None

	def test_expired_does_not_resolve(self, store):
		_seed(store, days=10)
		resolve = certificate_resolver(store, clock=lambda: utcnow() + timedelta(days=11))
		assert resolve(RoutingRule(id="r1", domain=DOMAIN, target="c1:80", ssl_enabled=True)) is None

	def test_unknown_id(self, store):
		rule = RoutingRule(id="r1", domain=DOMAIN, target="c1:80", ssl_enabled=True, certificate_id="le-gone")
		assert certificate_resolver(store)(rule) is None


class TestRules:

	async def test_save_applies(self, manager, rule_store, nginx, cfg):
		stored, result = await manager.save_rule(RoutingRule(id="r1", domain=DOMAIN, target="c1:8080"))
		assert stored.created_at is not None
		assert rule_store.get_rule("r1") is not None
		assert result.files == ["r1-app-example-com.conf"]
		assert nginx.reloads == 1
		assert "proxy_pass http://c1:8080;" in (cfg.managed_dir / "r1-app-example-com.conf").read_text()

	async def test_invalid_rule_is_not_stored(self, manager, rule_store, nginx):
		with pytest.raises(ValidationError):
			await manager.save_rule(RoutingRule(id="r1", domain="not a domain", target="c1:8080"))
		assert rule_store.get_rule("r1") is None
		assert nginx.calls == []

	async def test_update_keeps_created_at(self, manager):
		first, _ = await manager.save_rule(RoutingRule(id="r1", domain=DOMAIN, target="c1:8080"))
		second, _ = await manager.save_rule(RoutingRule(id="r1", domain=DOMAIN, target="c2:8080"))
		assert second.created_at == first.created_at
		assert second.target == "c2:8080"

	async def test_delete(self, manager, nginx, cfg):
		await manager.save_rule(RoutingRule(id="r1", domain=DOMAIN, target="c1:8080"))
		result = await manager.delete_rule("r1")
		assert result.files == []
		assert nginx.reloads == 2
		with pytest.raises(NotFoundError):
			await manager.delete_rule("r1")

	async def test_preview_matches_written_file(self, manager, cfg):
		await manager.save_rule(RoutingRule(id="r1", domain=DOMAIN, target="c1:8080"))
		assert manager.preview("r1") == (cfg.managed_dir / "r1-app-example-com.conf").read_text()
		with pytest.raises(NotFoundError):
			manager.preview("missing")

	async def test_certificate_referencing_rules(self, manager, store, rule_store):
		cert = _seed(store)
		rule_store.save_rule(RoutingRule(id="by-id", domain="x.example.com", target="c1:80", ssl_enabled=True, certificate_id=cert.id))
		rule_store.save_rule(RoutingRule(id="by-domain", domain=DOMAIN, target="c1:80", ssl_enabled=True))
		rule_store.save_rule(RoutingRule(id="plain", domain=DOMAIN, target="c1:80"))
		rule_store.save_rule(RoutingRule(id="other-id", domain=DOMAIN, target="c1:80", ssl_enabled=True, certificate_id="le-other"))
		assert sorted(r.id for r in manager.rules_using(cert)) == ["by-domain", "by-id"]

	async def test_apply_if_referenced(self, manager, store, rule_store, nginx):
		cert = _seed(store)
		assert await manager.apply_if_referenced(cert) is None
		rule_store.save_rule(RoutingRule(id="r1", domain=DOMAIN, target="c1:80", ssl_enabled=True))
		result = await manager.apply_if_referenced(cert)
		assert result is not None
		assert nginx.reloads == 1

	async def test_apply_all_marks_lapsed_certificates(self, manager, store, rule_store, nginx):
		_seed(store, "le-old", DOMAIN, days=-1)
		fresh = _seed(store, "le-new", "new.example.com")
		rule_store.save_rule(RoutingRule(id="old", domain=DOMAIN, target="c1:80", ssl_enabled=True))
		rule_store.save_rule(RoutingRule(id="new", domain="new.example.com", target="c2:80", ssl_enabled=True, certificate_id=fresh.id))
		rule_store.save_rule(RoutingRule(id="plain", domain="plain.example.com", target="c3:80"))

		await manager.apply_all()

		assert rule_store.get_rule("old").certificate_status == CertificateStatus.EXPIRED
		assert rule_store.get_rule("new").certificate_status != CertificateStatus.EXPIRED
		assert rule_store.get_rule("plain").certificate_status is None
		assert nginx.reloads == 1


class TestIssuance:
	"""ACME-enabled rules get a certificate and switch to HTTPS."""

	def test_needs_issuance(self, manager, store):
		rule = RoutingRule(id="r1", domain=DOMAIN, target="c1:80", acme_enabled=True)
		assert manager.needs_issuance(rule) is True
		assert manager.needs_issuance(rule.model_copy(update={"enabled": False})) is False
		assert manager.needs_issuance(rule.model_copy(update={"acme_enabled": False})) is False
		_seed(store)
		assert manager.needs_issuance(rule) is False

	async def test_save_triggers_issuance(self, manager, rule_store, nginx, cfg, fake_ca):
		stored, _ = await manager.save_rule(RoutingRule(id="r1", domain=DOMAIN, target="c1:8080", acme_enabled=True))
		assert stored.certificate_status == CertificateStatus.PENDING
		assert "listen 443" not in (cfg.managed_dir / "r1-app-example-com.conf").read_text()

		await _drain(manager)

		rule = rule_store.get_rule("r1")
		assert rule.ssl_enabled is True
		assert rule.certificate_id is not None
		assert rule.certificate_status == CertificateStatus.VALID
		text = (cfg.managed_dir / "r1-app-example-com.conf").read_text()
		assert "return 301 https://$host$request_uri;" in text
		assert f"ssl_certificate {cfg.certs_dir / rule.certificate_id / 'fullchain.pem'};" in text
		assert nginx.reloads == 2
		assert fake_ca.order_count == 1

	async def test_issue_for_rule(self, manager, rule_store, store):
		rule_store.save_rule(RoutingRule(id="r1", domain=DOMAIN, target="c1:8080", acme_enabled=True, acme_email="web@example.com"))
		cert = await manager.issue_for_rule("r1")
		assert cert.email == "web@example.com"
		assert rule_store.get_rule("r1").certificate_id == cert.id
		assert manager.rules_using(cert)[0].id == "r1"

	async def test_rule_deleted_during_issuance(self, manager, rule_store, store, bus, nginx):
		rule_store.save_rule(RoutingRule(id="r1", domain=DOMAIN, target="c1:8080", acme_enabled=True))
		bus.subscribe(CertificateIssued, lambda event: rule_store.delete_rule("r1"))

		cert = await manager.issue_for_rule("r1")

		assert store.get(cert.id) is not None
		assert rule_store.get_rule("r1") is None
		assert nginx.calls == []

	async def test_failure_marks_rule(self, manager, rule_store, fake_ca, nginx):
		rule_store.save_rule(RoutingRule(id="r1", domain=DOMAIN, target="c1:8080", acme_enabled=True))
		fake_ca.fail_validation.add(DOMAIN)
		with pytest.raises(DomainVerificationFailed):
			await manager.issue_for_rule("r1")
		rule = rule_store.get_rule("r1")
		assert rule.certificate_status == CertificateStatus.ERROR
		assert rule.ssl_enabled is False
		assert nginx.calls == []

	async def test_background_failure_is_contained(self, manager, rule_store, fake_ca):
		fake_ca.fail_validation.add(DOMAIN)
		await manager.save_rule(RoutingRule(id="r1", domain=DOMAIN, target="c1:8080", acme_enabled=True))
		await _drain(manager)
		assert rule_store.get_rule("r1").certificate_status == CertificateStatus.ERROR

	async def test_requires_domain(self, manager, rule_store):
		rule_store.save_rule(RoutingRule(id="r1", target="c1:8080"))
		with pytest.raises(ValidationError):
			await manager.issue_for_rule("r1")
