#!/usr/bin/env python3
#
# app/utils/scheduler.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Lightweight async background scheduler for periodic tasks."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, TypedDict

from app.utils.time import utcnow

_log = logging.getLogger(__name__)

__all__ = ["Scheduler", "JobStatus"]

# Minimum allowed interval to prevent CPU-pinning tight loops
_MIN_INTERVAL = 1.0
_MAX_BACKOFF = 300.0


class JobStatus(TypedDict):
	"""Status information for a scheduled job."""
	name: str
	interval_seconds: float
	last_success: str | None
	last_attempt: str | None
	last_error: str | None
	is_running: bool
	is_executing: bool
	run_count: int
	fail_count: int


@dataclass
class _Job:
	name: str
	interval_seconds: float
	func: Callable[[], Awaitable[None]]
	run_on_start: bool = False
	initial_delay: float = 0.0
	timeout: float | None = None
	last_success: datetime | None = None
	last_attempt: datetime | None = None
	last_error: str | None = None
	run_count: int = 0
	fail_count: int = 0
	# Serializes periodic runs with manual triggers
	lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class Scheduler:
	"""Async scheduler that runs jobs at fixed intervals.

	Usage::

		scheduler = Scheduler()
		scheduler.add("certificate-renewal", 86400, renew_due, run_on_start=True)

		await scheduler.start()          # lifespan startup
		await scheduler.trigger("certificate-renewal")
		await scheduler.stop_graceful()  # lifespan shutdown

	Job state (counters, timestamps) survives a stop/start cycle.
	"""

	def __init__(self) -> None:
		self._jobs: dict[str, _Job] = {}
		self._tasks: dict[str, asyncio.Task] = {}
		self._stop_event: asyncio.Event | None = None
		self._started = False

	@property
	def running(self) -> bool:
		return self._started

	def add(
		self,
		name: str,
		interval_seconds: float,
		func: Callable[[], Awaitable[None]],
		*,
		run_on_start: bool = False,
		initial_delay: float = 0.0,
		timeout: float | None = None,
	) -> None:
		"""Register a periodic job.

		Raises:
			RuntimeError: If scheduler is already running
			ValueError: If name is duplicate, interval is invalid, or initial_delay without run_on_start
		"""
		if self._started:
			raise RuntimeError(f"Cannot add job {name!r} while scheduler is running")
		if name in self._jobs:
			raise ValueError(f"Job {name!r} is already registered")
		if interval_seconds < _MIN_INTERVAL:
			raise ValueError(f"interval_seconds must be >= {_MIN_INTERVAL}, got {interval_seconds}")
		if initial_delay < 0:
			raise ValueError(f"initial_delay must be >= 0, got {initial_delay}")
		if initial_delay > 0 and not run_on_start:
			raise ValueError("initial_delay requires run_on_start=True")

		self._jobs[name] = _Job(
			name=name,
			interval_seconds=interval_seconds,
			func=func,
			run_on_start=run_on_start,
			initial_delay=initial_delay,
			timeout=timeout,
		)

	def remove(self, name: str) -> None:
		"""Unregister a job. Only allowed when scheduler is stopped."""
		if self._started:
			raise RuntimeError(f"Cannot remove job {name!r} while scheduler is running")
		if name not in self._jobs:
			raise KeyError(f"Job {name!r} not found")
		del self._jobs[name]
		_log.info("SCHEDULER job=%s removed", name)

	async def start(self) -> None:
		"""Start all registered jobs as background tasks."""
		if self._started:
			return
		self._started = True
		self._stop_event = asyncio.Event()
		for job in self._jobs.values():
			self._tasks[job.name] = asyncio.create_task(self._run_loop(job), name=f"scheduler:{job.name}")
			_log.info("SCHEDULER job=%s interval=%ds started", job.name, job.interval_seconds)

	async def stop_graceful(self, timeout: float = 5.0) -> None:
		"""Stop all jobs, waiting up to ``timeout`` before cancelling stragglers."""
		if not self._started:
			return
		self._started = False
		if self._stop_event is not None:
			self._stop_event.set()

		pending = [t for t in self._tasks.values() if not t.done()]
		if pending:
			_log.info("SCHEDULER waiting for %d tasks to finish gracefully", len(pending))
			_, not_done = await asyncio.wait(pending, timeout=timeout)
			if not_done:
				_log.warning("SCHEDULER %d tasks did not stop gracefully, forcing cancel", len(not_done))
				for task in not_done:
					task.cancel()
				await asyncio.gather(*not_done, return_exceptions=True)

		self._tasks.clear()
		_log.info("SCHEDULER stopped")

	async def trigger(self, name: str) -> bool:
		"""Run a job immediately, outside its regular rhythm.

		Waits for a concurrently executing run of the same job to finish first.
		Returns True on success.

		Raises:
			KeyError: If job does not exist
		"""
		job = self._jobs.get(name)
		if job is None:
			raise KeyError(f"Job {name!r} not found")
		_log.info("SCHEDULER job=%s triggered manually", name)
		return await self._execute(job)

	async def _sleep(self, stop_event: asyncio.Event, delay: float) -> bool:
		"""Sleep up to ``delay`` seconds. Returns True if stop was signalled."""
		try:
			await asyncio.wait_for(stop_event.wait(), timeout=delay)
			return True
		except asyncio.TimeoutError:
			return False

	async def _run_loop(self, job: _Job) -> None:
		assert self._stop_event is not None, "Bug: _run_loop called without start()"
		stop_event = self._stop_event
		loop = asyncio.get_running_loop()

		consecutive_failures = 0
		next_run = loop.time() + job.interval_seconds
		if job.run_on_start:
			next_run = loop.time() + job.initial_delay

		try:
			while self._started and not stop_event.is_set():
				delay = max(0.0, next_run - loop.time())
				if await self._sleep(stop_event, delay):
					break
				if not self._started:
					break

				success = await self._execute(job)
				now = loop.time()
				if success:
					consecutive_failures = 0
					# Skip missed intervals instead of bursting after long runs
					if next_run <= now:
						skipped = int((now - next_run) / job.interval_seconds)
						next_run += (skipped + 1) * job.interval_seconds
						if skipped > 0:
							_log.warning("SCHEDULER job=%s skipped %d intervals", job.name, skipped)
					else:
						next_run += job.interval_seconds
				else:
					consecutive_failures += 1
					backoff = min(2.0 ** consecutive_failures, _MAX_BACKOFF, job.interval_seconds)
					_log.error(
						"SCHEDULER job=%s failed (%d consecutive), retrying in %.0fs",
						job.name, consecutive_failures, backoff,
					)
					next_run = now + backoff
		except asyncio.CancelledError:
			_log.debug("SCHEDULER job=%s cancelled", job.name)
		except Exception:
			_log.exception("SCHEDULER job=%s fatal error in run loop", job.name)

	async def _execute(self, job: _Job) -> bool:
		"""Execute a single job run. Returns False on failure or timeout."""
		async with job.lock:
			job.last_attempt = utcnow()
			try:
				_log.debug("SCHEDULER job=%s executing", job.name)
				if job.timeout is not None:
					await asyncio.wait_for(job.func(), timeout=job.timeout)
				else:
					await job.func()
			except asyncio.TimeoutError:
				job.fail_count += 1
				job.last_error = f"timed out after {job.timeout:.1f}s"
				_log.error("SCHEDULER job=%s timed out after %.1fs (fail #%d)", job.name, job.timeout, job.fail_count)
				return False
			except Exception as exc:
				job.fail_count += 1
				job.last_error = str(exc) or exc.__class__.__name__
				_log.exception("SCHEDULER job=%s failed (fail #%d)", job.name, job.fail_count)
				return False

			job.last_success = job.last_attempt
			job.last_error = None
			job.run_count += 1
			_log.info("SCHEDULER job=%s completed (run #%d)", job.name, job.run_count)
			return True

	def get_status(self) -> list[JobStatus]:
		"""Return status of all jobs (for monitoring/API)."""
		return [
			{
				"name": job.name,
				"interval_seconds": job.interval_seconds,
				"last_success": job.last_success.isoformat() if job.last_success else None,
				"last_attempt": job.last_attempt.isoformat() if job.last_attempt else None,
				"last_error": job.last_error,
				"is_running": job.name in self._tasks and not self._tasks[job.name].done(),
				"is_executing": job.lock.locked(),
				"run_count": job.run_count,
				"fail_count": job.fail_count,
			}
			for job in self._jobs.values()
		]
