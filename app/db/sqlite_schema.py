#!/usr/bin/env python3
#
# app/db/sqlite_schema.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""SQLite schema initialization."""

from __future__ import annotations

import logging
import sqlite3

from .sqlite_runtime import transaction

_log = logging.getLogger(__name__)

SCHEMA_VERSION = 1


def init_schema(conn: sqlite3.Connection) -> None:
	"""Create the required tables (idempotent)."""
	with transaction(conn):
		# Routing rules: the full rule is stored as a JSON document,
		# id/domain/enabled are duplicated for lookups.
		conn.execute(
			"""
			CREATE TABLE IF NOT EXISTS proxy_rules (
				id TEXT PRIMARY KEY,
				domain TEXT,
				enabled INTEGER NOT NULL DEFAULT 1,
				document TEXT NOT NULL,
				created_at timestamp NOT NULL,
				updated_at timestamp NOT NULL
			)
			"""
		)
		conn.execute("CREATE INDEX IF NOT EXISTS idx_proxy_rules_domain ON proxy_rules(domain)")

		# Certificates: metadata only, PEM material lives under certs_dir/<id>/
		conn.execute(
			"""
			CREATE TABLE IF NOT EXISTS certificates (
				id TEXT PRIMARY KEY,
				domain TEXT NOT NULL,
				is_acme INTEGER NOT NULL DEFAULT 1,
				email TEXT,
				issued_at timestamp,
				expires_at timestamp NOT NULL,
				cert_path TEXT NOT NULL,
				key_path TEXT NOT NULL,
				chain_path TEXT,
				created_at timestamp NOT NULL,
				updated_at timestamp NOT NULL
			)
			"""
		)
		conn.execute("CREATE INDEX IF NOT EXISTS idx_certificates_domain ON certificates(domain)")
		conn.execute("CREATE INDEX IF NOT EXISTS idx_certificates_expires_at ON certificates(expires_at)")

		# Single-row leader lock shared by all workers
		conn.execute(
			"""
			CREATE TABLE IF NOT EXISTS leader_lock (
				id INTEGER PRIMARY KEY CHECK (id = 1),
				pid INTEGER NOT NULL,
				heartbeat_at timestamp NOT NULL
			)
			"""
		)

		current = conn.execute("PRAGMA user_version").fetchone()[0]
		if current < SCHEMA_VERSION:
			conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
			_log.info("DB schema initialized version=%d", SCHEMA_VERSION)
