#!/usr/bin/env python3
#
# app/proxy/writer.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Apply rendered configuration to nginx: stage, test, swap, reload.

The managed include directory is a symlink to a release directory::

	/etc/nginx/kontainers.d -> /etc/nginx/kontainers.d.releases/<generation>

Every apply renders the complete rule set into a fresh release, tests it with
``nginx -t`` through a harness copy of the main ``nginx.conf`` that includes
the staged release instead of the live one, and only then swaps the symlink
with ``os.replace``. A failed test leaves the live symlink untouched.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Optional

from ..errors import ConfigurationError, ReloadError, ValidationError
from ..models.certificates import Certificate
from ..models.rules import RoutingRule
from ..utils.events import ConfigApplied, ConfigApplyFailed, EventBus
from ..utils.time import utcnow
from . import constants
from .constants import HARNESS_NAME, atomic_write_text, fsync_dir, rule_file_name
from .renderer import RenderOptions, render

_log = logging.getLogger(__name__)

CertificateResolver = Callable[[RoutingRule], Optional[Certificate]]


class WriterState(str, Enum):
	IDLE = "IDLE"
	WRITING = "WRITING"
	TESTING = "TESTING"
	RELOADING = "RELOADING"
	FAILED = "FAILED"


@dataclass
class ApplyResult:
	generation: str
	release_dir: str
	files: list[str] = field(default_factory=list)
	skipped: list[str] = field(default_factory=list)
	reloaded: bool = False
	duration_ms: int = 0


class ConfigWriter:
	"""Serializes configuration applies behind one global lock."""

	def __init__(
		self,
		*,
		managed_dir: Path,
		nginx_conf: Path,
		nginx_bin: str = "nginx",
		options: RenderOptions | None = None,
		resolve_certificate: CertificateResolver | None = None,
		events: EventBus | None = None,
		timeout: float = constants.EXEC_TIMEOUT,
		keep_releases: int = 3,
	) -> None:
		self._managed_dir = Path(managed_dir)
		self._releases_dir = self._managed_dir.parent / f"{self._managed_dir.name}.releases"
		self._nginx_conf = Path(nginx_conf)
		self._nginx_bin = nginx_bin
		self._options = options or RenderOptions()
		self._resolve_certificate = resolve_certificate
		self._events = events
		self._timeout = timeout
		self._keep_releases = max(1, keep_releases)
		self._lock = asyncio.Lock()
		self._state = WriterState.IDLE
		self._last_error: str | None = None
		self._last_generation: str | None = None
		self._last_applied_at: datetime | None = None

	@classmethod
	def from_config(cls, cfg, **kwargs) -> ConfigWriter:
		return cls(
			managed_dir=cfg.managed_dir,
			nginx_conf=cfg.nginx_conf,
			nginx_bin=cfg.nginx_bin,
			options=RenderOptions.from_config(cfg),
			timeout=cfg.io_timeout,
			**kwargs,
		)

	@property
	def state(self) -> WriterState:
		return self._state

	@property
	def releases_dir(self) -> Path:
		return self._releases_dir

	def status(self) -> dict:
		return {
			"state": self._state.value,
			"busy": self._lock.locked(),
			"managed_dir": str(self._managed_dir),
			"active_release": self.active_release(),
			"last_generation": self._last_generation,
			"last_applied_at": self._last_applied_at.isoformat() if self._last_applied_at else None,
			"last_error": self._last_error,
		}

	def active_release(self) -> str | None:
		if self._managed_dir.is_symlink():
			return os.readlink(self._managed_dir)
		return None

	def render_rule(self, rule: RoutingRule) -> str:
		"""Render one rule exactly as ``apply`` would (no side effects)."""
		certificate = self._resolve_certificate(rule) if self._resolve_certificate else None
		return render(rule, certificate, self._options)

	# ------------------------------------------------------------------
	# apply
	# ------------------------------------------------------------------

	async def apply(self, rules: Iterable[RoutingRule]) -> ApplyResult:
		"""Render all enabled rules and make them the live configuration.

		Raises:
			ValidationError: a rule cannot be rendered (nothing was written)
			ConfigurationError: ``nginx -t`` rejected the staged release
			ReloadError: the release is live on disk but the reload failed
		"""
		async with self._lock:
			started = time.monotonic()
			self._state = WriterState.WRITING
			stage = "render"
			try:
				rendered, skipped = self._render_all(list(rules))
				generation = self._new_generation()
				stage = "write"
				release = self._write_release(generation, rendered)

				stage = "test"
				self._state = WriterState.TESTING
				await self._test_release(release)

				stage = "swap"
				self._swap(release)
				self._prune_releases(keep=release)

				stage = "reload"
				self._state = WriterState.RELOADING
				await self._reload()
			except Exception as exc:
				self._state = WriterState.FAILED
				self._last_error = str(exc)
				_log.error("NGINX_APPLY_FAILED stage=%s error=%s", stage, exc)
				if self._events is not None:
					await self._events.publish(ConfigApplyFailed(stage=stage, error=str(exc)))
				raise

			self._state = WriterState.IDLE
			self._last_error = None
			self._last_generation = generation
			self._last_applied_at = utcnow()
			result = ApplyResult(
				generation=generation,
				release_dir=str(release),
				files=sorted(rendered),
				skipped=skipped,
				reloaded=True,
				duration_ms=int((time.monotonic() - started) * 1000),
			)
			_log.info(
				"NGINX_APPLY generation=%s files=%d skipped=%d duration_ms=%d",
				generation, len(result.files), len(skipped), result.duration_ms,
			)
			if self._events is not None:
				await self._events.publish(ConfigApplied(generation=generation, files=tuple(result.files)))
			return result

	def _render_all(self, rules: list[RoutingRule]) -> tuple[dict[str, str], list[str]]:
		rendered: dict[str, str] = {}
		skipped: list[str] = []
		seen_ids: set[str] = set()
		for rule in rules:
			if rule.id in seen_ids:
				raise ValidationError(f"duplicate rule id {rule.id!r}")
			seen_ids.add(rule.id)
			if not rule.enabled:
				skipped.append(rule.id)
				continue
			text = self.render_rule(rule)
			rendered[rule_file_name(rule.id, rule.domain)] = text
		return rendered, skipped

	def _new_generation(self) -> str:
		base = utcnow().strftime("%Y%m%dT%H%M%S%f")
		generation = base
		n = 1
		while (self._releases_dir / generation).exists():
			generation = f"{base}-{n}"
			n += 1
		return generation

	def _write_release(self, generation: str, rendered: dict[str, str]) -> Path:
		release = self._releases_dir / generation
		release.mkdir(parents=True, exist_ok=False)
		try:
			for name in sorted(rendered):
				atomic_write_text(release / name, rendered[name], mode=0o644)
			fsync_dir(release)
		except OSError:
			shutil.rmtree(release, ignore_errors=True)
			raise
		_log.debug("NGINX_STAGE release=%s files=%d", release, len(rendered))
		return release

	def _write_harness(self, release: Path) -> Path:
		try:
			main_conf = self._nginx_conf.read_text(encoding="utf-8")
		except OSError as exc:
			raise ConfigurationError(f"Cannot read {self._nginx_conf}", detail=str(exc)) from exc
		managed = str(self._managed_dir)
		if managed not in main_conf:
			raise ConfigurationError(
				f"{self._nginx_conf} does not include the managed directory {managed}",
			)
		harness = self._nginx_conf.parent / HARNESS_NAME
		atomic_write_text(harness, main_conf.replace(managed, str(release)))
		return harness

	async def _test_release(self, release: Path) -> None:
		try:
			harness = self._write_harness(release)
			try:
				code, stdout, stderr = await constants.run_exec(
					self._nginx_bin, "-t", "-c", str(harness), timeout=self._timeout,
				)
			finally:
				harness.unlink(missing_ok=True)
		except Exception:
			shutil.rmtree(release, ignore_errors=True)
			raise
		if code != 0:
			shutil.rmtree(release, ignore_errors=True)
			diagnostic = (stderr or stdout).strip()
			_log.warning("NGINX_TEST_FAILED release=%s code=%d", release.name, code)
			raise ConfigurationError("nginx configuration test failed", detail=diagnostic)
		_log.debug("NGINX_TEST_OK release=%s", release.name)

	def _swap(self, release: Path) -> None:
		managed = self._managed_dir
		if managed.exists() and not managed.is_symlink():
			# One-time migration of a plain directory into the release layout
			legacy = self._releases_dir / f"legacy-{release.name}"
			_log.warning("NGINX_SWAP migrating plain directory %s to %s", managed, legacy)
			os.replace(managed, legacy)
		tmp_link = managed.parent / f".{managed.name}.swap"
		tmp_link.unlink(missing_ok=True)
		os.symlink(release, tmp_link)
		os.replace(tmp_link, managed)
		fsync_dir(managed.parent)
		_log.info("NGINX_SWAP active=%s", release.name)

	def _prune_releases(self, keep: Path) -> None:
		# Migrated legacy directories are older than any generation
		releases = sorted(
			(p for p in self._releases_dir.iterdir() if p.is_dir() and p != keep),
			key=lambda p: (not p.name.startswith("legacy-"), p.name),
		)
		for old in releases[: max(0, len(releases) - (self._keep_releases - 1))]:
			shutil.rmtree(old, ignore_errors=True)
			_log.debug("NGINX_PRUNE release=%s", old.name)

	async def _reload(self) -> None:
		code, stdout, stderr = await constants.run_exec(self._nginx_bin, "-s", "reload", timeout=self._timeout)
		if code != 0:
			diagnostic = (stderr or stdout).strip()
			raise ReloadError("nginx reload failed; previous configuration still serving", detail=diagnostic)
