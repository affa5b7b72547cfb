#!/usr/bin/env python3
#
# app/acme/challenges.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""HTTP-01 challenge files under the ACME webroot."""

from __future__ import annotations

import logging
import re
from pathlib import Path

import httpx

from ..errors import CertificateError, DomainVerificationFailed
from ..proxy.constants import ACME_CHALLENGE_PREFIX, atomic_write_text

_log = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"^[A-Za-z0-9_-]{1,256}$")


class ChallengeStore:
	"""Publishes key authorizations where the rendered challenge location serves them.

	nginx maps ``/.well-known/acme-challenge/<token>`` to
	``<webroot>/.well-known/acme-challenge/<token>``.
	"""

	def __init__(self, webroot: Path):
		self.webroot = Path(webroot)
		self.challenge_dir = self.webroot / ACME_CHALLENGE_PREFIX.strip("/")

	def path_for(self, token: str) -> Path:
		if not _TOKEN_RE.fullmatch(token or ""):
			raise CertificateError("CA sent a malformed challenge token", detail=repr(token))
		return self.challenge_dir / token

	def publish(self, token: str, key_authorization: str) -> Path:
		path = self.path_for(token)
		atomic_write_text(path, key_authorization, mode=0o644)
		_log.debug("ACME_CHALLENGE published token=%s", token)
		return path

	def remove(self, token: str) -> None:
		try:
			self.path_for(token).unlink(missing_ok=True)
		except OSError as exc:
			_log.warning("ACME_CHALLENGE cleanup failed token=%s error=%s", token, exc)

	def read(self, token: str) -> str | None:
		try:
			return self.path_for(token).read_text(encoding="utf-8")
		except FileNotFoundError:
			return None


async def self_check(
	domain: str,
	token: str,
	key_authorization: str,
	*,
	timeout: float = 10.0,
	transport: httpx.AsyncBaseTransport | None = None,
) -> None:
	"""Fetch the token over plain HTTP the way the CA will.

	Raises:
		DomainVerificationFailed: token unreachable or content mismatch
	"""
	url = f"http://{domain}{ACME_CHALLENGE_PREFIX}{token}"
	try:
		async with httpx.AsyncClient(timeout=timeout, transport=transport, follow_redirects=False) as client:
			resp = await client.get(url)
	except httpx.HTTPError as exc:
		raise DomainVerificationFailed("challenge token unreachable", domain=domain, detail=f"{url}: {exc}") from exc
	if resp.status_code != 200:
		raise DomainVerificationFailed(
			"challenge token unreachable", domain=domain, detail=f"{url} returned HTTP {resp.status_code}",
		)
	if resp.text.strip() != key_authorization:
		raise DomainVerificationFailed("challenge token served with wrong content", domain=domain, detail=url)
	_log.debug("ACME_SELF_CHECK ok domain=%s", domain)
