#!/usr/bin/env python3
#
# app/db/sqlite_certificates.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Certificate metadata CRUD operations."""

from __future__ import annotations

import sqlite3
from datetime import datetime

from ..utils.time import utcnow
from .sqlite_runtime import transaction


def upsert_certificate(
	conn: sqlite3.Connection,
	cert_id: str,
	domain: str,
	*,
	is_acme: bool,
	email: str | None,
	issued_at: datetime | None,
	expires_at: datetime,
	cert_path: str,
	key_path: str,
	chain_path: str | None,
) -> None:
	"""Insert a certificate row or replace the mutable columns of an existing one."""
	now = utcnow()
	with transaction(conn):
		conn.execute(
			"""
			INSERT INTO certificates (
				id, domain, is_acme, email, issued_at, expires_at,
				cert_path, key_path, chain_path, created_at, updated_at
			)
			VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
			ON CONFLICT(id) DO UPDATE SET
				email = excluded.email,
				issued_at = excluded.issued_at,
				expires_at = excluded.expires_at,
				cert_path = excluded.cert_path,
				key_path = excluded.key_path,
				chain_path = excluded.chain_path,
				updated_at = excluded.updated_at
			""",
			(cert_id, domain, int(is_acme), email, issued_at, expires_at, cert_path, key_path, chain_path, now, now),
		)


def get_certificate(conn: sqlite3.Connection, cert_id: str) -> sqlite3.Row | None:
	cur = conn.execute("SELECT * FROM certificates WHERE id = ?", (cert_id,))
	return cur.fetchone()


def get_latest_for_domain(conn: sqlite3.Connection, domain: str) -> sqlite3.Row | None:
	"""Latest-expiring certificate for a domain."""
	cur = conn.execute(
		"SELECT * FROM certificates WHERE domain = ? ORDER BY expires_at DESC, id LIMIT 1",
		(domain.lower(),),
	)
	return cur.fetchone()


def list_certificates(conn: sqlite3.Connection) -> list[sqlite3.Row]:
	cur = conn.execute("SELECT * FROM certificates ORDER BY expires_at, id")
	return cur.fetchall()


def delete_certificate(conn: sqlite3.Connection, cert_id: str) -> bool:
	with transaction(conn):
		cur = conn.execute("DELETE FROM certificates WHERE id = ?", (cert_id,))
		return cur.rowcount > 0
