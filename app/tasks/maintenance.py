#!/usr/bin/env python3
#
# app/tasks/maintenance.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Periodic SQLite maintenance."""

from __future__ import annotations

import logging
from pathlib import Path

import aiosqlite

from app.utils.config import get_config

_log = logging.getLogger(__name__)

__all__ = [
	"sqlite_maintenance",
	"sqlite_integrity_check",
]


async def sqlite_maintenance(db_path: Path | None = None) -> None:
	"""WAL checkpoint, ANALYZE and PRAGMA optimize.

	VACUUM is left out (heavy I/O, run it manually when needed).
	"""
	db_path = Path(db_path or get_config().db_path)
	if not db_path.exists():
		_log.warning("MAINTENANCE SQLite database not found at %s", db_path)
		return

	try:
		async with aiosqlite.connect(db_path) as db:
			# TRUNCATE resets the WAL file to zero bytes
			await db.execute("PRAGMA wal_checkpoint(TRUNCATE)")
			await db.execute("ANALYZE")
			await db.execute("PRAGMA optimize")
		_log.info("MAINTENANCE SQLite maintenance completed path=%s", db_path.name)
	except Exception:
		_log.exception("MAINTENANCE SQLite maintenance failed")
		raise


async def sqlite_integrity_check(db_path: Path | None = None) -> bool:
	"""Run ``PRAGMA integrity_check``; returns True when the database is healthy."""
	db_path = Path(db_path or get_config().db_path)
	if not db_path.exists():
		_log.warning("MAINTENANCE SQLite database not found at %s", db_path)
		return False

	async with aiosqlite.connect(db_path) as db:
		cursor = await db.execute("PRAGMA integrity_check")
		result = await cursor.fetchone()

	if result and result[0] == "ok":
		_log.info("MAINTENANCE SQLite integrity check passed")
		return True
	_log.critical("MAINTENANCE SQLite integrity check FAILED: %s", result[0] if result else "unknown error")
	return False
