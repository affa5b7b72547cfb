#!/usr/bin/env python3
#
# app/proxy/service.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Glue between the rule store, the writer and the issuance workflow.

Every rule change and every certificate change ends in the same place: the
current rule snapshot is read from the store and handed to
:meth:`ConfigWriter.apply`.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from ..acme.store import CertificateStore
from ..acme.workflow import IssuanceWorkflow
from ..db.sqlite_rules import RuleStore
from ..errors import NotFoundError, ValidationError
from ..models.certificates import Certificate
from ..models.rules import CertificateStatus, RoutingRule
from ..utils.events import CertificateIssued, CertificateRenewed, EventBus, IssuanceFailed
from ..utils.time import utcnow
from .validation import validate_rule
from .writer import ApplyResult, CertificateResolver, ConfigWriter

_log = logging.getLogger(__name__)


def certificate_resolver(store: CertificateStore, *, clock: Callable = utcnow) -> CertificateResolver:
	"""Build the resolver the writer uses to pick a rule's certificate.

	Explicit certificate paths win and are rendered straight from the rule.
	Otherwise ``certificate_id`` is looked up, falling back to the
	latest-expiring certificate for the rule's domain. Expired certificates
	never resolve, so such rules fall back to HTTP-only.
	"""

	def resolve(rule: RoutingRule) -> Optional[Certificate]:
		if not rule.ssl_enabled or (rule.ssl_cert_path and rule.ssl_key_path):
			return None
		cert: Optional[Certificate] = None
		if rule.certificate_id:
			cert = store.get(rule.certificate_id)
		elif rule.domain:
			cert = store.get_for_domain(rule.domain)
		if cert is None:
			return None
		if cert.expires_at <= clock():
			_log.warning("PROXY certificate expired id=%s rule=%s", cert.id, rule.id)
			return None
		return cert

	return resolve


def mark_expired_rules(rules: RuleStore, store: CertificateStore, now: Optional[datetime] = None) -> list[str]:
	"""Set ``certificate_status=EXPIRED`` on TLS rules whose certificate has lapsed.

	Returns the ids of the rules that changed.
	"""
	now = now or utcnow()
	changed: list[str] = []
	for rule in rules.list_rules():
		if not (rule.ssl_enabled or rule.acme_enabled) or rule.certificate_status == CertificateStatus.EXPIRED:
			continue
		if rule.ssl_cert_path and rule.ssl_key_path:
			continue
		if rule.certificate_id:
			cert = store.get(rule.certificate_id)
		elif rule.domain:
			cert = store.get_for_domain(rule.domain)
		else:
			cert = None
		if cert is not None and cert.expires_at <= now:
			rules.save_rule(rule.model_copy(update={"certificate_status": CertificateStatus.EXPIRED}))
			changed.append(rule.id)
	if changed:
		_log.warning("PROXY status EXPIRED rules=%s", ",".join(changed))
	return changed


def _references(rule: RoutingRule, cert_id: str, domain: str) -> bool:
	if rule.certificate_id:
		return rule.certificate_id == cert_id
	return bool(rule.domain) and rule.domain.lower() == domain.lower()


class ProxyManager:
	"""Applies rule changes and links issued certificates back to rules."""

	def __init__(
		self,
		*,
		rules: RuleStore,
		certificates: CertificateStore,
		writer: ConfigWriter,
		workflow: IssuanceWorkflow | None = None,
		events: EventBus | None = None,
	):
		self.rules = rules
		self.certificates = certificates
		self.writer = writer
		self.workflow = workflow
		self._background: set[asyncio.Task] = set()
		self._unsubscribe: list[Callable[[], None]] = []
		if events is not None:
			self._unsubscribe = [
				events.subscribe(CertificateIssued, self._on_certificate),
				events.subscribe(CertificateRenewed, self._on_certificate),
				events.subscribe(IssuanceFailed, self._on_issuance_failed),
			]

	def close(self) -> None:
		for unsubscribe in self._unsubscribe:
			unsubscribe()
		self._unsubscribe = []
		for task in list(self._background):
			task.cancel()

	# ------------------------------------------------------------------
	# rules
	# ------------------------------------------------------------------

	def require_rule(self, rule_id: str) -> RoutingRule:
		rule = self.rules.get_rule(rule_id)
		if rule is None:
			raise NotFoundError(f"rule {rule_id!r} not found")
		return rule

	def preview(self, rule_id: str) -> str:
		return self.writer.render_rule(self.require_rule(rule_id))

	async def apply_all(self) -> ApplyResult:
		mark_expired_rules(self.rules, self.certificates)
		return await self.writer.apply(self.rules.list_rules())

	async def save_rule(self, rule: RoutingRule) -> tuple[RoutingRule, ApplyResult]:
		"""Validate, persist and apply one rule.

		A rule that cannot be rendered is rejected before it is stored.
		"""
		validate_rule(rule)
		if rule.acme_enabled and rule.certificate_status is None:
			rule = rule.model_copy(update={"certificate_status": CertificateStatus.PENDING})
		stored = self.rules.save_rule(rule)
		result = await self.handle_rule_change(stored.id)
		return stored, result

	async def delete_rule(self, rule_id: str) -> ApplyResult:
		if not self.rules.delete_rule(rule_id):
			raise NotFoundError(f"rule {rule_id!r} not found")
		_log.info("PROXY rule deleted id=%s", rule_id)
		return await self.apply_all()

	async def handle_rule_change(self, rule_id: str) -> ApplyResult:
		"""Apply the current snapshot, then start issuance if the rule needs it."""
		result = await self.apply_all()
		rule = self.rules.get_rule(rule_id)
		if rule is not None and self.needs_issuance(rule):
			self.schedule_issuance(rule)
		return result

	# ------------------------------------------------------------------
	# certificates
	# ------------------------------------------------------------------

	def needs_issuance(self, rule: RoutingRule) -> bool:
		if not (rule.enabled and rule.acme_enabled and rule.domain):
			return False
		if rule.ssl_cert_path and rule.ssl_key_path:
			return False
		if self.workflow is None or self.workflow.in_flight(rule.domain):
			return False
		if rule.certificate_id:
			cert = self.certificates.get(rule.certificate_id)
		else:
			cert = self.certificates.get_for_domain(rule.domain)
		return cert is None or cert.expires_at <= utcnow()

	def rules_using(self, cert: Certificate) -> list[RoutingRule]:
		return [r for r in self.rules.list_rules() if r.enabled and r.ssl_enabled and _references(r, cert.id, cert.domain)]

	async def apply_if_referenced(self, cert: Certificate) -> Optional[ApplyResult]:
		"""Re-apply when an enabled TLS rule depends on ``cert``."""
		if not self.rules_using(cert):
			return None
		return await self.apply_all()

	def schedule_issuance(self, rule: RoutingRule) -> asyncio.Task:
		task = asyncio.create_task(self._issue_in_background(rule.id), name=f"issue:{rule.id}")
		self._background.add(task)
		task.add_done_callback(self._background.discard)
		_log.info("PROXY issuance scheduled rule=%s domain=%s", rule.id, rule.domain)
		return task

	async def _issue_in_background(self, rule_id: str) -> None:
		try:
			await self.issue_for_rule(rule_id)
		except Exception as exc:
			# Surfaced through IssuanceFailed and the rule's certificate_status
			_log.warning("PROXY background issuance failed rule=%s error=%s", rule_id, exc)

	async def issue_for_rule(self, rule_id: str) -> Optional[Certificate]:
		"""Issue a certificate for a rule's domain and switch the rule to HTTPS.

		The rule is re-read after issuance; if it was deleted meanwhile the
		certificate is kept but no rule is touched and nothing is applied.
		"""
		if self.workflow is None:
			raise ValidationError("ACME issuance is not configured")
		rule = self.require_rule(rule_id)
		if not rule.domain:
			raise ValidationError(f"rule {rule_id!r} has no domain")
		cert = await self.workflow.issue_certificate(rule.domain, rule.acme_email)

		current = self.rules.get_rule(rule_id)
		if current is None:
			_log.info("PROXY rule vanished during issuance id=%s domain=%s", rule_id, rule.domain)
			return cert
		update: dict = {"ssl_enabled": True, "certificate_status": CertificateStatus.VALID}
		if not (current.ssl_cert_path and current.ssl_key_path):
			update["certificate_id"] = cert.id
		self.rules.save_rule(current.model_copy(update=update))
		await self.apply_all()
		return cert

	# ------------------------------------------------------------------
	# event subscribers
	# ------------------------------------------------------------------

	def _set_status(self, predicate: Callable[[RoutingRule], bool], status: CertificateStatus) -> int:
		changed = 0
		for rule in self.rules.list_rules():
			if predicate(rule) and rule.certificate_status != status:
				self.rules.save_rule(rule.model_copy(update={"certificate_status": status}))
				changed += 1
		return changed

	def _on_certificate(self, event: CertificateIssued | CertificateRenewed) -> None:
		changed = self._set_status(
			lambda r: r.acme_enabled and _references(r, event.cert_id, event.domain),
			CertificateStatus.VALID,
		)
		if changed:
			_log.debug("PROXY status VALID rules=%d domain=%s", changed, event.domain)

	def _on_issuance_failed(self, event: IssuanceFailed) -> None:
		domain = event.domain.lower()
		changed = self._set_status(
			lambda r: r.acme_enabled and bool(r.domain) and r.domain.lower() == domain,
			CertificateStatus.ERROR,
		)
		if changed:
			_log.debug("PROXY status ERROR rules=%d domain=%s", changed, event.domain)
