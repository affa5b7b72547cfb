#!/usr/bin/env python3
#
# app/utils/time.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Timezone-aware time utilities."""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Optional

SECONDS_PER_DAY = 86400


def utcnow() -> datetime:
	"""Return the current UTC time as a timezone-aware datetime."""
	return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
	"""Ensure a datetime is timezone-aware and in UTC.

	Raises:
		ValueError: If the datetime is naive (no timezone info)
	"""
	if dt is None:
		return None
	if dt.tzinfo is None:
		raise ValueError("Naive datetime not allowed - must be timezone-aware")
	return dt.astimezone(timezone.utc)


def days_remaining(expires_at: datetime, now: Optional[datetime] = None) -> int:
	"""Whole days until ``expires_at``, rounded down.

	Negative once the certificate has expired (-1 for anything within the
	last day).
	"""
	now = ensure_utc(now) if now is not None else utcnow()
	delta = ensure_utc(expires_at) - now
	return math.floor(delta.total_seconds() / SECONDS_PER_DAY)
