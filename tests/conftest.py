#!/usr/bin/env python3
#
# tests/conftest.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Shared fixtures: temporary config, database, fake CA and fake nginx."""

from __future__ import annotations

from dataclasses import dataclass, field

import pytest

from app.acme.store import CertificateStore
from app.acme.workflow import IssuanceWorkflow
from app.db.sqlite_rules import SqliteRuleStore
from app.db.sqlite_runtime import close_connection, connect
from app.db.sqlite_schema import init_schema
from app.proxy import constants
from app.proxy.service import ProxyManager, certificate_resolver
from app.proxy.writer import ConfigWriter
from app.utils.config import Config, reset_config
from app.utils.events import EventBus
from fake_ca import DIRECTORY_URL, FakeCA, challenge_server


@pytest.fixture(autouse=True)
def _isolated_config():
	reset_config()
	yield
	reset_config()


@pytest.fixture
def cfg(tmp_path) -> Config:
	data_dir = tmp_path / "data"
	nginx_dir = tmp_path / "nginx"
	for d in (data_dir, data_dir / "certs", data_dir / "acme-accounts", nginx_dir, tmp_path / "acme", tmp_path / "logs"):
		d.mkdir(parents=True, exist_ok=True)
	managed = nginx_dir / "kontainers.d"
	(nginx_dir / "nginx.conf").write_text(
		"events {}\nhttp {\n    include %s/*.conf;\n}\n" % managed
	)
	return Config(
		base_dir=tmp_path,
		data_dir=data_dir,
		db_path=data_dir / "kontainers.db",
		certs_dir=data_dir / "certs",
		accounts_dir=data_dir / "acme-accounts",
		nginx_bin="nginx",
		nginx_conf=nginx_dir / "nginx.conf",
		managed_dir=managed,
		acme_webroot=tmp_path / "acme",
		nginx_log_dir=tmp_path / "logs",
		crs_dir=tmp_path / "crs",
		acme_directory_url=DIRECTORY_URL,
		acme_email="ops@example.com",
		acme_poll_attempts=5,
		acme_poll_delay=0.0,
		acme_step_retries=3,
		acme_self_check=True,
		io_timeout=5.0,
	)


@pytest.fixture
def conn(cfg):
	connection = connect(cfg.db_path)
	init_schema(connection)
	yield connection
	close_connection(connection)


@pytest.fixture
def store(conn, cfg) -> CertificateStore:
	return CertificateStore(conn, cfg.certs_dir)


@pytest.fixture
def rule_store(conn) -> SqliteRuleStore:
	return SqliteRuleStore(conn)


@pytest.fixture
def bus() -> EventBus:
	return EventBus()


@pytest.fixture
def fake_ca() -> FakeCA:
	return FakeCA()


@pytest.fixture
def workflow(cfg, store, bus, fake_ca) -> IssuanceWorkflow:
	return IssuanceWorkflow.from_config(
		cfg,
		store=store,
		events=bus,
		transport=fake_ca.transport,
		self_check_transport=challenge_server(cfg.acme_webroot),
	)


@dataclass
class FakeNginx:
	"""Stands in for the nginx binary: records calls, returns scripted results."""
	test_result: tuple[int, str, str] = (0, "", "nginx: configuration file test is successful")
	reload_result: tuple[int, str, str] = (0, "", "")
	calls: list[tuple[str, ...]] = field(default_factory=list)

	async def run_exec(self, *cmd: str, timeout: float = constants.EXEC_TIMEOUT) -> tuple[int, str, str]:
		self.calls.append(tuple(cmd))
		if "-t" in cmd:
			return self.test_result
		return self.reload_result

	@property
	def reloads(self) -> int:
		return sum(1 for c in self.calls if "reload" in c)


@pytest.fixture
def nginx(monkeypatch) -> FakeNginx:
	fake = FakeNginx()
	monkeypatch.setattr(constants, "run_exec", fake.run_exec)
	return fake


@pytest.fixture
def writer(cfg, store, bus, nginx) -> ConfigWriter:
	return ConfigWriter.from_config(cfg, resolve_certificate=certificate_resolver(store), events=bus)


@pytest.fixture
def manager(rule_store, store, writer, workflow, bus):
	mgr = ProxyManager(rules=rule_store, certificates=store, writer=writer, workflow=workflow, events=bus)
	yield mgr
	mgr.close()
