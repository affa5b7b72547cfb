#!/usr/bin/env python3
#
# app/api/acme.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Certificate management: issue, import, renew, delete, renewal checks."""

# No postponed annotations here: slowapi wraps the endpoints and FastAPI must
# resolve their parameter types at import time.

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Path, Request

from ..acme.store import CertificateStore
from ..acme.workflow import IssuanceWorkflow
from ..errors import NotFoundError
from ..models.certificates import ImportRequest, IssueRequest
from ..proxy.service import ProxyManager
from ..tasks.renewal import check_renewals as _check_renewals
from ..utils.config import Config
from ..utils.deps import get_certificate_store, get_config, get_manager, get_scheduler, get_workflow
from ..utils.rate_limit import RATE_LIMIT_HEAVY, limiter
from ..utils.scheduler import Scheduler
from ..utils.time import utcnow
from .response import ok_response

_log = logging.getLogger(__name__)

router = APIRouter(tags=["acme"])

RENEWAL_JOB = "certificate-renewal"

CertId = Annotated[str, Path(min_length=1, max_length=128, pattern=r"^[A-Za-z0-9][A-Za-z0-9._-]*$")]


@router.get("/certificates")
async def list_certificates(
	store: CertificateStore = Depends(get_certificate_store),
	cfg: Config = Depends(get_config),
):
	now = utcnow()
	certificates = [c.to_public(cfg.renewal_threshold_days, now).model_dump(mode="json") for c in store.list_certificates()]
	return ok_response(data=certificates)


@router.post("/certificates", status_code=201)
@limiter.limit(RATE_LIMIT_HEAVY)
async def issue_certificate(
	request: Request,
	payload: IssueRequest,
	workflow: IssuanceWorkflow = Depends(get_workflow),
	manager: ProxyManager = Depends(get_manager),
	cfg: Config = Depends(get_config),
):
	"""Run the ACME workflow synchronously and return the stored certificate.

	A concurrent request for the same domain joins the running issuance.
	"""
	cert = await workflow.issue_certificate(payload.domain, payload.email)
	applied = await manager.apply_if_referenced(cert)
	return ok_response(
		message=f"Certificate issued for {cert.domain}",
		data=cert.to_public(cfg.renewal_threshold_days).model_dump(mode="json"),
		applied=applied is not None,
	)


@router.post("/certificates/import", status_code=201)
@limiter.limit(RATE_LIMIT_HEAVY)
async def import_certificate(
	request: Request,
	payload: ImportRequest,
	store: CertificateStore = Depends(get_certificate_store),
	manager: ProxyManager = Depends(get_manager),
	cfg: Config = Depends(get_config),
):
	cert = store.import_certificate(payload.certificate_pem, payload.private_key_pem, payload.chain_pem, payload.domain)
	applied = await manager.apply_if_referenced(cert)
	return ok_response(
		message=f"Certificate imported for {cert.domain}",
		data=cert.to_public(cfg.renewal_threshold_days).model_dump(mode="json"),
		applied=applied is not None,
	)


@router.post("/certificates/{cert_id}/renew")
@limiter.limit(RATE_LIMIT_HEAVY)
async def renew_certificate(
	request: Request,
	cert_id: CertId,
	store: CertificateStore = Depends(get_certificate_store),
	workflow: IssuanceWorkflow = Depends(get_workflow),
	manager: ProxyManager = Depends(get_manager),
	cfg: Config = Depends(get_config),
):
	existing = store.require(cert_id)
	cert = await workflow.renew_certificate(existing.domain, cert_id)
	applied = await manager.apply_if_referenced(cert)
	return ok_response(
		message=f"Certificate renewed for {cert.domain}",
		data=cert.to_public(cfg.renewal_threshold_days).model_dump(mode="json"),
		applied=applied is not None,
	)


@router.delete("/certificates/{cert_id}")
async def delete_certificate(
	cert_id: CertId,
	store: CertificateStore = Depends(get_certificate_store),
	manager: ProxyManager = Depends(get_manager),
):
	"""Delete a certificate; rules that used it fall back to HTTP-only."""
	cert = store.require(cert_id)
	dependent = manager.rules_using(cert)
	if not store.delete(cert_id):
		raise NotFoundError(f"certificate {cert_id!r} not found")
	if dependent:
		await manager.apply_all()
	return ok_response(
		message=f"Certificate {cert_id} deleted",
		affected_rules=[r.id for r in dependent],
	)


@router.get("/issuances")
async def list_issuances(workflow: IssuanceWorkflow = Depends(get_workflow)):
	return ok_response(data=[s.model_dump(mode="json") for s in workflow.list_states()])


@router.get("/renewal-check")
async def renewal_check(
	store: CertificateStore = Depends(get_certificate_store),
	cfg: Config = Depends(get_config),
):
	"""Which certificates are at or below the renewal threshold."""
	certificates = _check_renewals(store, cfg.renewal_threshold_days)
	due = [c for c in certificates if c.needs_renewal]
	data = {
		"threshold_days": cfg.renewal_threshold_days,
		"total_certificates": len(certificates),
		"needs_renewal_count": len(due),
		"needs_renewal": [
			{
				"id": c.id,
				"domain": c.domain,
				"expires_at": c.expires_at.isoformat(),
				"days_remaining": c.days_remaining,
				"is_acme": c.is_acme,
			}
			for c in due
		],
	}
	return ok_response(data=data)


@router.post("/renewal-check/run")
@limiter.limit(RATE_LIMIT_HEAVY)
async def run_renewal_now(
	request: Request,
	scheduler: Scheduler = Depends(get_scheduler),
):
	"""Run the renewal job now and return its report."""
	try:
		success = await scheduler.trigger(RENEWAL_JOB)
	except KeyError:
		raise HTTPException(status_code=404, detail="Renewal job is not scheduled in this worker")
	report = getattr(request.app.state, "renewal_report", None)
	return ok_response(
		data=report.to_dict() if report is not None else None,
		success=success,
	)
