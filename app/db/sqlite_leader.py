#!/usr/bin/env python3
#
# app/db/sqlite_leader.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Leader election so only one worker runs the scheduler and startup apply."""

from __future__ import annotations

import logging
import os
import sqlite3
from datetime import timedelta

from ..utils.time import utcnow
from .sqlite_runtime import transaction

_log = logging.getLogger(__name__)

# A leader that stopped heartbeating for this long can be replaced
LEADER_STALE_SECONDS = 60
LEADER_HEARTBEAT_SECONDS = 20


def _owner_gone(owner_pid: int) -> bool:
	try:
		os.kill(owner_pid, 0)
	except ProcessLookupError:
		return True
	except PermissionError:
		# Different UID or PID namespace: never steal aggressively
		return False
	return False


def try_acquire_leader_lock(conn: sqlite3.Connection) -> bool:
	"""Become leader unless a live worker already holds the lock."""
	pid = os.getpid()
	now = utcnow()
	stale_before = now - timedelta(seconds=LEADER_STALE_SECONDS)
	try:
		with transaction(conn, immediate=True):
			row = conn.execute("SELECT pid FROM leader_lock WHERE id = 1").fetchone()
			force = 0
			if row is not None:
				try:
					owner_pid = int(row["pid"])
				except (TypeError, ValueError):
					owner_pid = -1
				if owner_pid > 0 and owner_pid != pid and _owner_gone(owner_pid):
					force = 1
			conn.execute(
				"""
				INSERT INTO leader_lock (id, pid, heartbeat_at)
				VALUES (1, ?, ?)
				ON CONFLICT(id) DO UPDATE SET pid = excluded.pid, heartbeat_at = excluded.heartbeat_at
				WHERE pid = ? OR heartbeat_at < ? OR ? = 1
				""",
				(pid, now, pid, stale_before, force),
			)
			row = conn.execute("SELECT pid FROM leader_lock WHERE id = 1").fetchone()
			return row is not None and row["pid"] == pid
	except sqlite3.Error as exc:
		_log.warning("LEADER acquire failed: %s", exc)
		return False


def refresh_leader_lock(conn: sqlite3.Connection) -> bool:
	"""Heartbeat. Returns False if this worker no longer holds the lock."""
	with transaction(conn):
		cur = conn.execute(
			"UPDATE leader_lock SET heartbeat_at = ? WHERE id = 1 AND pid = ?",
			(utcnow(), os.getpid()),
		)
		held = cur.rowcount > 0
	if not held:
		_log.warning("LEADER lock lost pid=%d", os.getpid())
	return held


def release_leader_lock(conn: sqlite3.Connection) -> bool:
	try:
		with transaction(conn):
			conn.execute("DELETE FROM leader_lock WHERE id = 1 AND pid = ?", (os.getpid(),))
		return True
	except sqlite3.Error as exc:
		_log.warning("LEADER release failed: %s", exc)
		return False
