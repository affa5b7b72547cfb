#!/usr/bin/env python3
#
# app/proxy/constants.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Nginx constants and shared subprocess / file utilities."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import re
import tempfile
from collections.abc import Generator
from pathlib import Path
from typing import IO

_log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

ACME_CHALLENGE_PREFIX = "/.well-known/acme-challenge/"

# Name of the syntax-test harness written next to the main nginx.conf
HARNESS_NAME = ".kontainers-test.conf"

TLS_PROTOCOLS = "TLSv1.2 TLSv1.3"
TLS_CIPHERS = (
	"ECDHE-ECDSA-AES128-GCM-SHA256:ECDHE-RSA-AES128-GCM-SHA256:"
	"ECDHE-ECDSA-AES256-GCM-SHA384:ECDHE-RSA-AES256-GCM-SHA384:"
	"ECDHE-ECDSA-CHACHA20-POLY1305:ECDHE-RSA-CHACHA20-POLY1305:"
	"DHE-RSA-AES128-GCM-SHA256:DHE-RSA-AES256-GCM-SHA384"
)

# OWASP CRS files per named ruleset, relative to the CRS directory
CRS_RULESET_FILES: dict[str, str] = {
	"sql": "rules/REQUEST-942-APPLICATION-ATTACK-SQLI.conf",
	"xss": "rules/REQUEST-941-APPLICATION-ATTACK-XSS.conf",
	"lfi": "rules/REQUEST-930-APPLICATION-ATTACK-LFI.conf",
	"rfi": "rules/REQUEST-931-APPLICATION-ATTACK-RFI.conf",
	"scanner": "rules/REQUEST-913-SCANNER-DETECTION.conf",
	"session": "rules/REQUEST-943-APPLICATION-ATTACK-SESSION-FIXATION.conf",
	"protocol": "rules/REQUEST-920-PROTOCOL-ENFORCEMENT.conf",
}

REWRITE_FLAGS = frozenset({"", "last", "break", "redirect", "permanent"})

# Regex patterns
RULE_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
DOMAIN_LABEL_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")
TLD_RE = re.compile(r"^[a-z](?:[a-z0-9-]{0,61}[a-z0-9])?$")
UPSTREAM_HOST_RE = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9._-]{0,251}[A-Za-z0-9])?$")
HEADER_NAME_RE = re.compile(r"^[A-Za-z0-9-]{1,128}$")
COOKIE_NAME_RE = re.compile(r"^[A-Za-z0-9_]{1,64}$")
ZONE_NAME_RE = re.compile(r"^[A-Za-z0-9_]{1,64}$")
SIZE_RE = re.compile(r"^\d{1,9}[kKmMgG]?$")
BUFFERS_RE = re.compile(r"^\d{1,4} \d{1,9}[kKmM]?$")
DURATION_RE = re.compile(r"^\d{1,9}[smhd]$")
STATUS_CODES_RE = re.compile(r"^[1-5]\d\d(?: [1-5]\d\d)*$")
CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f]")
SLUG_RE = re.compile(r"[^a-zA-Z0-9]")

# Default timeout for nginx subprocess calls
EXEC_TIMEOUT = 30.0  # seconds


# ---------------------------------------------------------------------------
# Shared Utility Functions
# ---------------------------------------------------------------------------

def domain_slug(domain: str) -> str:
	"""File-name safe form of a domain (non-alphanumerics become '-')."""
	return SLUG_RE.sub("-", domain)


def rule_file_name(rule_id: str, domain: str | None) -> str:
	if domain:
		return f"{rule_id}-{domain_slug(domain.lower())}.conf"
	return f"{rule_id}.conf"


async def run_exec(*cmd: str, timeout: float = EXEC_TIMEOUT) -> tuple[int, str, str]:
	"""Run a command and return (code, stdout, stderr). Uses exec, not shell.

	Timeouts and spawn failures (e.g. missing binary) are reported as code -1
	with a readable message in stderr.
	"""
	proc: asyncio.subprocess.Process | None = None
	try:
		proc = await asyncio.create_subprocess_exec(
			*cmd,
			stdout=asyncio.subprocess.PIPE,
			stderr=asyncio.subprocess.PIPE,
		)
		stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
		code = proc.returncode
		assert code is not None, "returncode should be set after communicate()"
		return code, stdout.decode(errors="replace"), stderr.decode(errors="replace")
	except asyncio.TimeoutError:
		_log.warning("NGINX_EXEC_TIMEOUT timeout=%.1fs cmd=%s", timeout, cmd)
		return -1, "", f"Command timed out after {timeout}s"
	except OSError as exc:
		_log.warning("NGINX_EXEC_ERROR cmd=%s error=%s", cmd, exc)
		return -1, "", str(exc)
	finally:
		if proc is not None and proc.returncode is None:
			with contextlib.suppress(Exception):
				proc.kill()
				await proc.wait()


@contextlib.contextmanager
def atomic_write(path: Path, encoding: str = "utf-8", mode: int | None = None) -> Generator[IO[str], None, None]:
	"""Context manager for atomic file writes with fsync.

	The temp file is created in the target directory, so ``os.replace`` never
	crosses a filesystem. ``mode`` is applied before any content is written.
	"""
	path.parent.mkdir(parents=True, exist_ok=True)
	fd, tmp_path = tempfile.mkstemp(
		dir=str(path.parent),
		prefix=f".{path.name}.",
		suffix=".tmp",
	)
	try:
		if mode is not None:
			os.fchmod(fd, mode)
		with os.fdopen(fd, "w", encoding=encoding) as f:
			yield f
			f.flush()
			os.fsync(f.fileno())
		os.replace(tmp_path, path)
		fsync_dir(path.parent)
	finally:
		with contextlib.suppress(OSError):
			if os.path.exists(tmp_path):
				os.unlink(tmp_path)


def atomic_write_text(path: Path, content: str, mode: int | None = None) -> None:
	"""Atomically write UTF-8 text to a file (convenience wrapper)."""
	with atomic_write(path, mode=mode) as f:
		f.write(content)


def fsync_dir(path: Path) -> None:
	dir_fd = os.open(str(path), os.O_RDONLY)
	try:
		os.fsync(dir_fd)
	finally:
		os.close(dir_fd)


__all__ = [
	"ACME_CHALLENGE_PREFIX",
	"HARNESS_NAME",
	"TLS_PROTOCOLS",
	"TLS_CIPHERS",
	"CRS_RULESET_FILES",
	"REWRITE_FLAGS",
	"EXEC_TIMEOUT",
	"domain_slug",
	"rule_file_name",
	"run_exec",
	"atomic_write",
	"atomic_write_text",
	"fsync_dir",
]
