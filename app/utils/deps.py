#!/usr/bin/env python3
#
# app/utils/deps.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""FastAPI dependency helpers.

All services are built once in the application lifespan and parked on
``app.state``; these helpers hand them to the route functions.
"""

from __future__ import annotations

from fastapi import Request

from ..acme.store import CertificateStore
from ..acme.workflow import IssuanceWorkflow
from ..proxy.service import ProxyManager
from .config import Config
from .scheduler import Scheduler


def get_config(request: Request) -> Config:
	"""Get the application configuration from app state."""
	return request.app.state.cfg


def get_manager(request: Request) -> ProxyManager:
	return request.app.state.manager


def get_certificate_store(request: Request) -> CertificateStore:
	return request.app.state.certificates


def get_workflow(request: Request) -> IssuanceWorkflow:
	return request.app.state.workflow


def get_scheduler(request: Request) -> Scheduler:
	return request.app.state.scheduler
