#!/usr/bin/env python3
#
# app/db/sqlite_rules.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Routing rule persistence and the SQLite-backed rule store."""

from __future__ import annotations

import logging
import sqlite3
from typing import Optional, Protocol, runtime_checkable

from ..models.rules import RoutingRule
from ..utils.time import utcnow
from .sqlite_runtime import transaction

_log = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Row helpers
# ─────────────────────────────────────────────────────────────────────────────


def _row_to_rule(row: sqlite3.Row) -> RoutingRule:
	rule = RoutingRule.model_validate_json(row["document"])
	return rule.model_copy(update={"created_at": row["created_at"], "updated_at": row["updated_at"]})


def upsert_rule(conn: sqlite3.Connection, rule: RoutingRule) -> RoutingRule:
	"""Insert or replace a rule document, keeping the original created_at."""
	now = utcnow()
	with transaction(conn):
		existing = conn.execute("SELECT created_at FROM proxy_rules WHERE id = ?", (rule.id,)).fetchone()
		created_at = existing["created_at"] if existing else (rule.created_at or now)
		stored = rule.model_copy(update={"created_at": created_at, "updated_at": now})
		document = stored.model_dump_json(exclude={"created_at", "updated_at"})
		conn.execute(
			"""
			INSERT INTO proxy_rules (id, domain, enabled, document, created_at, updated_at)
			VALUES (?, ?, ?, ?, ?, ?)
			ON CONFLICT(id) DO UPDATE SET
				domain = excluded.domain,
				enabled = excluded.enabled,
				document = excluded.document,
				updated_at = excluded.updated_at
			""",
			(rule.id, rule.domain.lower() if rule.domain else None, int(rule.enabled), document, created_at, now),
		)
	return stored


def get_rule(conn: sqlite3.Connection, rule_id: str) -> Optional[RoutingRule]:
	row = conn.execute("SELECT * FROM proxy_rules WHERE id = ?", (rule_id,)).fetchone()
	return _row_to_rule(row) if row else None


def list_rules(conn: sqlite3.Connection) -> list[RoutingRule]:
	rows = conn.execute("SELECT * FROM proxy_rules ORDER BY created_at, id").fetchall()
	return [_row_to_rule(row) for row in rows]


def list_rules_for_domain(conn: sqlite3.Connection, domain: str) -> list[RoutingRule]:
	rows = conn.execute("SELECT * FROM proxy_rules WHERE domain = ? ORDER BY id", (domain.lower(),)).fetchall()
	return [_row_to_rule(row) for row in rows]


def delete_rule(conn: sqlite3.Connection, rule_id: str) -> bool:
	with transaction(conn):
		cur = conn.execute("DELETE FROM proxy_rules WHERE id = ?", (rule_id,))
		return cur.rowcount > 0


# ─────────────────────────────────────────────────────────────────────────────
# Rule store
# ─────────────────────────────────────────────────────────────────────────────


@runtime_checkable
class RuleStore(Protocol):
	"""Source of routing rules. The engine never caches rules itself."""

	def list_rules(self) -> list[RoutingRule]: ...

	def get_rule(self, rule_id: str) -> Optional[RoutingRule]: ...

	def save_rule(self, rule: RoutingRule) -> RoutingRule: ...

	def delete_rule(self, rule_id: str) -> bool: ...


class SqliteRuleStore:
	"""RuleStore backed by the ``proxy_rules`` table."""

	def __init__(self, conn: sqlite3.Connection):
		self._conn = conn

	def list_rules(self) -> list[RoutingRule]:
		return list_rules(self._conn)

	def get_rule(self, rule_id: str) -> Optional[RoutingRule]:
		return get_rule(self._conn, rule_id)

	def save_rule(self, rule: RoutingRule) -> RoutingRule:
		stored = upsert_rule(self._conn, rule)
		_log.debug("RULES saved id=%s domain=%s", rule.id, rule.domain)
		return stored

	def delete_rule(self, rule_id: str) -> bool:
		deleted = delete_rule(self._conn, rule_id)
		if deleted:
			_log.debug("RULES deleted id=%s", rule_id)
		return deleted

	def rules_for_domain(self, domain: str) -> list[RoutingRule]:
		return list_rules_for_domain(self._conn, domain)
