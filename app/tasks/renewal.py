#!/usr/bin/env python3
#
# app/tasks/renewal.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Periodic certificate renewal.

Each tick renews every ACME certificate whose ``days_remaining`` is at or
below the threshold. A failure for one domain is logged and reported; the
remaining certificates are still processed and the failed one is retried on
the next tick.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Optional

from ..acme.store import CertificateStore
from ..acme.workflow import IssuanceWorkflow
from ..db.sqlite_rules import RuleStore
from ..errors import KontainersError
from ..models.certificates import CertificatePublic
from ..proxy.service import mark_expired_rules
from ..proxy.writer import ConfigWriter
from ..utils.time import utcnow

_log = logging.getLogger(__name__)

__all__ = ["RenewalReport", "check_renewals", "run_renewal"]


@dataclass
class RenewalReport:
	started_at: datetime
	finished_at: Optional[datetime] = None
	checked: int = 0
	renewed: list[str] = field(default_factory=list)
	failed: list[dict] = field(default_factory=list)
	# Externally supplied certificates nearing expiry: reported, never renewed
	external_due: list[str] = field(default_factory=list)
	# Rules flagged EXPIRED because their certificate lapsed unrenewed
	expired_rules: list[str] = field(default_factory=list)
	applied: bool = False
	apply_error: Optional[str] = None

	def to_dict(self) -> dict:
		data = asdict(self)
		data["started_at"] = self.started_at.isoformat()
		data["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
		return data


def check_renewals(store: CertificateStore, threshold_days: int, now: Optional[datetime] = None) -> list[CertificatePublic]:
	"""All certificates with their renewal verdict, soonest expiry first."""
	now = now or utcnow()
	return [cert.to_public(threshold_days, now) for cert in store.list_certificates()]


async def run_renewal(
	store: CertificateStore,
	workflow: IssuanceWorkflow,
	*,
	threshold_days: int,
	rules: RuleStore | None = None,
	writer: ConfigWriter | None = None,
	now: Optional[datetime] = None,
) -> RenewalReport:
	"""Renew due ACME certificates, then re-apply if a live rule uses one."""
	now = now or utcnow()
	report = RenewalReport(started_at=now)
	renewed_domains: set[str] = set()

	for cert in store.list_certificates():
		report.checked += 1
		remaining = cert.days_remaining(now)
		if remaining > threshold_days:
			continue
		if not cert.is_acme:
			_log.warning("RENEWAL external certificate due id=%s domain=%s days_remaining=%d", cert.id, cert.domain, remaining)
			report.external_due.append(cert.id)
			continue

		_log.info("RENEWAL due id=%s domain=%s days_remaining=%d", cert.id, cert.domain, remaining)
		try:
			renewed = await workflow.renew_certificate(cert.domain, cert.id)
		except Exception as exc:
			_log.error("RENEWAL failed id=%s domain=%s error=%s", cert.id, cert.domain, exc)
			report.failed.append({"id": cert.id, "domain": cert.domain, "error": str(exc), "type": type(exc).__name__})
			continue
		report.renewed.append(renewed.id)
		renewed_domains.add(renewed.domain.lower())

	if rules is not None:
		report.expired_rules = mark_expired_rules(rules, store, utcnow())

	if report.renewed and rules is not None and writer is not None:
		snapshot = rules.list_rules()
		renewed_ids = set(report.renewed)
		affected = [
			r for r in snapshot
			if r.enabled and (
				r.certificate_id in renewed_ids
				or (not r.certificate_id and r.domain and r.domain.lower() in renewed_domains)
			)
		]
		if affected:
			try:
				await writer.apply(snapshot)
				report.applied = True
			except KontainersError as exc:
				report.apply_error = str(exc)
				_log.error("RENEWAL apply failed rules=%d error=%s", len(affected), exc)

	report.finished_at = utcnow()
	_log.info(
		"RENEWAL done checked=%d renewed=%d failed=%d external_due=%d applied=%s",
		report.checked, len(report.renewed), len(report.failed), len(report.external_due), report.applied,
	)
	return report
