#!/usr/bin/env python3
#
# app/db/sqlite_runtime.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""SQLite runtime helpers: adapters, connections, and transactions."""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

_log = logging.getLogger(__name__)


def _adapt_datetime(value: datetime) -> str:
	if value.tzinfo is None:
		raise ValueError("Naive datetime not allowed in SQLite")
	return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _convert_datetime(value: bytes) -> datetime:
	s = value.decode("utf-8")
	if s.endswith("Z"):
		s = s[:-1] + "+00:00"
	try:
		dt = datetime.fromisoformat(s)
	except ValueError:
		_log.error("DB corrupt timestamp value=%r, returning epoch", value.decode("utf-8", errors="replace"))
		return datetime(1970, 1, 1, tzinfo=timezone.utc)
	if dt.tzinfo is None:
		dt = dt.replace(tzinfo=timezone.utc)
	return dt.astimezone(timezone.utc)


# NOTE: sqlite3 adapter/converter registration is process-global.
sqlite3.register_adapter(datetime, _adapt_datetime)
sqlite3.register_converter("timestamp", _convert_datetime)


# ---------------------------------------------------------------------------
# Connection Registry
# ---------------------------------------------------------------------------

_OPEN_CONNECTIONS: set[sqlite3.Connection] = set()
_CONNECTIONS_LOCK = threading.Lock()


def _enable_wal(conn: sqlite3.Connection, max_retries: int = 5) -> None:
	"""Switch to WAL, retrying while another worker holds the lock."""
	for attempt in range(max_retries):
		try:
			current_mode = conn.execute("PRAGMA journal_mode").fetchone()[0].upper()
			if current_mode != "WAL":
				conn.execute("PRAGMA journal_mode=WAL")
			return
		except sqlite3.OperationalError as e:
			if "locked" not in str(e).lower() or attempt == max_retries - 1:
				raise
			wait = 0.1 * (2 ** attempt)
			_log.debug("DB locked during WAL activation (attempt %d/%d), retrying in %.1fs", attempt + 1, max_retries, wait)
			time.sleep(wait)


def connect(db_path: Path) -> sqlite3.Connection:
	"""Create a SQLite connection configured for this application."""
	db_path.parent.mkdir(parents=True, exist_ok=True)
	conn = sqlite3.connect(
		str(db_path),
		detect_types=sqlite3.PARSE_DECLTYPES,
		check_same_thread=False,
		timeout=30.0,
	)
	conn.row_factory = sqlite3.Row
	_enable_wal(conn)
	conn.execute("PRAGMA foreign_keys=ON")

	with _CONNECTIONS_LOCK:
		_OPEN_CONNECTIONS.add(conn)
	return conn


def close_connection(conn: sqlite3.Connection) -> None:
	"""Close and untrack a SQLite connection."""
	with _CONNECTIONS_LOCK:
		_OPEN_CONNECTIONS.discard(conn)
	conn.close()


def close_all_connections() -> int:
	"""Close all tracked connections for graceful shutdown."""
	with _CONNECTIONS_LOCK:
		connections = list(_OPEN_CONNECTIONS)
		_OPEN_CONNECTIONS.clear()

	closed = 0
	for conn in connections:
		try:
			conn.close()
			closed += 1
		except sqlite3.Error as e:
			_log.warning("DB failed to close connection: %s", e)
	return closed


@contextmanager
def transaction(conn: sqlite3.Connection, *, immediate: bool = False):
	"""Transaction context manager that commits or rolls back on error.

	Nested use is a no-op; the outermost transaction controls commit/rollback.
	"""
	started_tx = False
	if not conn.in_transaction:
		conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
		started_tx = True
	try:
		yield
		if started_tx:
			conn.commit()
	except Exception:
		if started_tx and conn.in_transaction:
			conn.rollback()
		raise
