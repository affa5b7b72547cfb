#!/usr/bin/env python3
#
# app/main.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""FastAPI application factory and startup lifecycle wiring."""

from __future__ import annotations

import logging
import os
import sys
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from . import __version__
from .acme.store import CertificateStore
from .acme.workflow import IssuanceWorkflow
from .api import acme as acme_api
from .api import proxy as proxy_api
from .api.response import register_exception_handlers
from .db.sqlite_leader import (
	LEADER_HEARTBEAT_SECONDS,
	refresh_leader_lock,
	release_leader_lock,
	try_acquire_leader_lock,
)
from .db.sqlite_rules import SqliteRuleStore
from .db.sqlite_runtime import close_all_connections, connect
from .db.sqlite_schema import init_schema
from .errors import KontainersError
from .proxy.service import ProxyManager, certificate_resolver
from .proxy.writer import ConfigWriter
from .tasks.maintenance import sqlite_maintenance
from .tasks.renewal import run_renewal
from .utils.config import Config, load_config
from .utils.events import EventBus
from .utils.rate_limit import limiter
from .utils.request_id import RequestIDFilter, RequestIDMiddleware
from .utils.scheduler import Scheduler

_log = logging.getLogger(__name__)

# ANSI color codes for log levels (if TTY)
_LOG_COLORS = {
	"DEBUG": "\033[36m",    # Cyan
	"INFO": "\033[32m",     # Green
	"WARNING": "\033[33m",  # Yellow
	"ERROR": "\033[31m",    # Red
	"CRITICAL": "\033[35m", # Magenta
}
_RESET = "\033[0m"

_MAINTENANCE_INTERVAL_SECONDS = 6 * 3600
_RENEWAL_INITIAL_DELAY_SECONDS = 60.0


class _ColoredFormatter(logging.Formatter):
	"""Custom formatter that adds color to log levels in TTY."""

	def format(self, record):
		orig_levelname = record.levelname
		if orig_levelname in _LOG_COLORS:
			record.levelname = f"{_LOG_COLORS[orig_levelname]}{orig_levelname:<8}{_RESET}"
		else:
			record.levelname = f"{orig_levelname:<8}"
		try:
			return super().format(record)
		finally:
			record.levelname = orig_levelname


def _setup_logging(log_level: str) -> None:
	"""Configure unified logging for the entire application."""
	level = getattr(logging, log_level, logging.INFO)

	if sys.stdout.isatty():
		formatter = _ColoredFormatter(
			fmt="%(asctime)s | %(levelname)s | %(name)s | %(request_id)s | %(message)s",
			datefmt="%Y-%m-%d %H:%M:%S",
		)
	else:
		formatter = logging.Formatter(
			fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(request_id)s | %(message)s",
			datefmt="%Y-%m-%d %H:%M:%S",
		)

	# force=True removes any pre-existing handlers (e.g. from uvicorn)
	logging.basicConfig(
		level=level,
		handlers=[logging.StreamHandler(sys.stdout)],
		force=True,
	)
	for handler in logging.root.handlers:
		handler.setFormatter(formatter)
		handler.addFilter(RequestIDFilter())

	# Make sure uvicorn loggers use the root handler & level
	for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
		logger = logging.getLogger(name)
		logger.handlers.clear()
		logger.setLevel(level)
		logger.propagate = True

	# Quiet down noisy third-party libraries
	for name in ("httpcore", "httpx", "aiosqlite", "watchfiles"):
		logging.getLogger(name).setLevel(logging.WARNING)


@asynccontextmanager
async def _lifespan(app: FastAPI):
	"""Application lifespan manager."""
	cfg: Config = app.state.cfg

	# ─── BOOTSTRAP ───────────────────────────────────────────
	conn = connect(cfg.db_path)
	init_schema(conn)
	is_leader = try_acquire_leader_lock(conn)
	_log.info("STARTUP worker pid=%d leader=%s", os.getpid(), is_leader)

	events = EventBus()
	certificates = CertificateStore(conn, cfg.certs_dir)
	rules = SqliteRuleStore(conn)
	writer = ConfigWriter.from_config(
		cfg,
		resolve_certificate=certificate_resolver(certificates),
		events=events,
	)
	workflow = IssuanceWorkflow.from_config(
		cfg,
		store=certificates,
		events=events,
		transport=app.state.acme_transport,
		self_check_transport=app.state.self_check_transport,
	)
	manager = ProxyManager(
		rules=rules,
		certificates=certificates,
		writer=writer,
		workflow=workflow,
		events=events,
	)

	app.state.events = events
	app.state.certificates = certificates
	app.state.rules = rules
	app.state.writer = writer
	app.state.workflow = workflow
	app.state.manager = manager
	app.state.renewal_report = None

	# ─── SCHEDULER ───────────────────────────────────────────
	scheduler = Scheduler()
	if is_leader:
		# Rendered configuration is derived state: rebuild it from the store
		try:
			await manager.apply_all()
		except KontainersError as exc:
			_log.warning("STARTUP initial apply failed: %s", exc)

		async def _renew_certificates() -> None:
			app.state.renewal_report = await run_renewal(
				certificates,
				workflow,
				threshold_days=cfg.renewal_threshold_days,
				rules=rules,
				writer=writer,
			)

		async def _maintain_sqlite() -> None:
			await sqlite_maintenance(cfg.db_path)

		async def _heartbeat() -> None:
			refresh_leader_lock(conn)

		scheduler.add(
			"certificate-renewal",
			cfg.renewal_interval_seconds,
			_renew_certificates,
			run_on_start=True,
			initial_delay=_RENEWAL_INITIAL_DELAY_SECONDS,
		)
		scheduler.add("sqlite-maintenance", _MAINTENANCE_INTERVAL_SECONDS, _maintain_sqlite, timeout=300.0)
		scheduler.add("leader-heartbeat", LEADER_HEARTBEAT_SECONDS, _heartbeat, timeout=10.0)
		await scheduler.start()
	app.state.scheduler = scheduler
	app.state.is_leader = is_leader

	_log.info("Kontainers started successfully (leader=%s, staging=%s)", is_leader, cfg.acme_staging)

	yield

	# ─── SHUTDOWN ────────────────────────────────────────────
	await scheduler.stop_graceful(timeout=5.0)
	manager.close()
	events.clear()
	if is_leader:
		release_leader_lock(conn)
	closed = close_all_connections()
	_log.info("SQLITE_SHUTDOWN connections_closed=%d", closed)
	_log.info("Kontainers shutdown complete")


def create_app(
	cfg: Config | None = None,
	*,
	acme_transport: httpx.AsyncBaseTransport | None = None,
	self_check_transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
	"""Application factory for Kontainers.

	``cfg`` and the transports are injection points for tests; uvicorn calls
	this without arguments.
	"""
	if cfg is None:
		cfg = load_config()
		_setup_logging(cfg.log_level)

	app = FastAPI(
		title="Kontainers",
		description="Nginx proxy configuration and certificate lifecycle engine",
		version=__version__,
		lifespan=_lifespan,
		docs_url="/api/docs",
		redoc_url="/api/redoc",
	)

	app.state.cfg = cfg
	app.state.acme_transport = acme_transport
	app.state.self_check_transport = self_check_transport

	# ─── MIDDLEWARE ──────────────────────────────────────────
	app.add_middleware(RequestIDMiddleware)

	# Rate limiting
	app.state.limiter = limiter
	app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
	register_exception_handlers(app)

	# ─── API ROUTES ──────────────────────────────────────────
	app.include_router(proxy_api.router, prefix="/api/proxy")
	app.include_router(acme_api.router, prefix="/api/acme")

	return app
