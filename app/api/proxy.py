#!/usr/bin/env python3
#
# app/api/proxy.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Routing rule CRUD, configuration preview and apply."""

from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Annotated

from fastapi import APIRouter, Depends, Path

from ..errors import ValidationError
from ..models.rules import RoutingRule, RoutingRuleUpdate
from ..proxy.service import ProxyManager
from ..utils.deps import get_manager, get_scheduler
from ..utils.scheduler import Scheduler
from .response import ok_response

_log = logging.getLogger(__name__)

router = APIRouter(tags=["proxy"])

RuleId = Annotated[str, Path(min_length=1, max_length=64, pattern=r"^[A-Za-z0-9_-]+$")]


def _dump(rule: RoutingRule) -> dict:
	return rule.model_dump(mode="json")


@router.get("/rules")
async def list_rules(manager: ProxyManager = Depends(get_manager)):
	return ok_response(data=[_dump(r) for r in manager.rules.list_rules()])


@router.post("/rules", status_code=201)
async def create_rule(rule: RoutingRule, manager: ProxyManager = Depends(get_manager)):
	"""Store a new rule and apply the resulting configuration.

	ACME-enabled rules without a usable certificate start issuance in the
	background; the rule renders HTTP-only until it succeeds.
	"""
	if manager.rules.get_rule(rule.id) is not None:
		raise ValidationError(f"rule {rule.id!r} already exists")
	stored, result = await manager.save_rule(rule)
	_log.info("PROXY rule created id=%s domain=%s", stored.id, stored.domain)
	return ok_response(data=_dump(stored), apply=asdict(result))


@router.get("/rules/{rule_id}")
async def get_rule(rule_id: RuleId, manager: ProxyManager = Depends(get_manager)):
	return ok_response(data=_dump(manager.require_rule(rule_id)))


@router.put("/rules/{rule_id}")
async def update_rule(
	payload: RoutingRuleUpdate,
	rule_id: RuleId,
	manager: ProxyManager = Depends(get_manager),
):
	existing = manager.require_rule(rule_id)
	merged = {**existing.model_dump(), **payload.model_dump(exclude_unset=True), "id": rule_id}
	stored, result = await manager.save_rule(RoutingRule.model_validate(merged))
	_log.info("PROXY rule updated id=%s", rule_id)
	return ok_response(data=_dump(stored), apply=asdict(result))


@router.delete("/rules/{rule_id}")
async def delete_rule(rule_id: RuleId, manager: ProxyManager = Depends(get_manager)):
	result = await manager.delete_rule(rule_id)
	return ok_response(message=f"Rule {rule_id} deleted", apply=asdict(result))


@router.get("/rules/{rule_id}/config")
async def preview_rule_config(rule_id: RuleId, manager: ProxyManager = Depends(get_manager)):
	"""The exact text the writer would stage for this rule."""
	return ok_response(data={"rule_id": rule_id, "config": manager.preview(rule_id)})


@router.post("/rules/{rule_id}/issue", status_code=202)
async def issue_for_rule(rule_id: RuleId, manager: ProxyManager = Depends(get_manager)):
	rule = manager.require_rule(rule_id)
	if not (rule.acme_enabled and rule.domain):
		raise ValidationError(f"rule {rule_id!r} is not ACME-enabled")
	manager.schedule_issuance(rule)
	return ok_response(message=f"Issuance started for {rule.domain}")


@router.post("/apply")
async def apply_config(manager: ProxyManager = Depends(get_manager)):
	result = await manager.apply_all()
	return ok_response(data=asdict(result))


@router.get("/status")
async def proxy_status(
	manager: ProxyManager = Depends(get_manager),
	scheduler: Scheduler = Depends(get_scheduler),
):
	return ok_response(data={"writer": manager.writer.status(), "jobs": scheduler.get_status()})
