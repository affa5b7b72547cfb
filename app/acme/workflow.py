#!/usr/bin/env python3
#
# app/acme/workflow.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""ACME issuance workflow: one state machine per domain.

REQUESTED -> KEY_READY -> ORDER_CREATED -> CHALLENGE_PENDING ->
CHALLENGE_VALID -> FINALIZING -> ISSUED, with FAILED reachable from every
step.

Within the process, concurrent requests for the same domain share one
asyncio task (and therefore one CA order). Across processes a per-domain
``fcntl`` lock file turns a duplicate into :class:`ConcurrencyError`.
"""

from __future__ import annotations

import asyncio
import fcntl
import logging
import time
from pathlib import Path
from typing import IO, Optional

import httpx

from ..errors import CertificateError, ConcurrencyError, KontainersError, NetworkError, ValidationError
from ..models.certificates import Certificate, IssuanceState, IssuanceStep
from ..proxy.validation import normalize_domain
from ..utils.events import CertificateIssued, CertificateRenewed, EventBus, IssuanceFailed
from ..utils.time import utcnow
from .challenges import ChallengeStore, self_check
from .client import ACMEClient, account_dir_name
from .store import CertificateStore, new_certificate_id

_log = logging.getLogger(__name__)


def _as_certificate_error(exc: Exception, domain: str) -> KontainersError:
	"""Fold unexpected failures into the certificate error taxonomy."""
	if isinstance(exc, KontainersError):
		return exc
	if isinstance(exc, OSError):
		return CertificateError("local I/O failure while issuing", domain=domain, detail=str(exc))
	if isinstance(exc, (ValueError, KeyError, TypeError)):
		return NetworkError("unexpected response from CA", domain=domain, detail=f"{type(exc).__name__}: {exc}")
	return CertificateError("issuance failed unexpectedly", domain=domain, detail=f"{type(exc).__name__}: {exc}")


class DomainLock:
	"""Exclusive, non-blocking, cross-process lock for one domain.

	The file object is kept on the instance; closing it releases the lock.
	"""

	def __init__(self, locks_dir: Path, domain: str):
		self.path = locks_dir / f"{domain}.lock"
		self._fh: IO[str] | None = None

	def acquire(self) -> bool:
		self.path.parent.mkdir(parents=True, exist_ok=True)
		fh = open(self.path, "w")
		try:
			fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
		except OSError:
			fh.close()
			return False
		fh.write(str(time.time()))
		fh.flush()
		self._fh = fh
		return True

	def release(self) -> None:
		if self._fh is None:
			return
		try:
			fcntl.flock(self._fh.fileno(), fcntl.LOCK_UN)
		finally:
			self._fh.close()
			self._fh = None


class IssuanceWorkflow:
	"""Issues and renews certificates for single domains via HTTP-01."""

	def __init__(
		self,
		*,
		store: CertificateStore,
		challenges: ChallengeStore,
		directory_url: str,
		accounts_dir: Path,
		locks_dir: Path,
		default_email: str = "",
		timeout: float = 30.0,
		poll_attempts: int = 30,
		poll_delay: float = 2.0,
		step_retries: int = 3,
		self_check: bool = True,
		events: EventBus | None = None,
		transport: httpx.AsyncBaseTransport | None = None,
		self_check_transport: httpx.AsyncBaseTransport | None = None,
	):
		self._store = store
		self._challenges = challenges
		self._directory_url = directory_url
		self._accounts_dir = Path(accounts_dir)
		self._locks_dir = Path(locks_dir)
		self._default_email = default_email
		self._timeout = timeout
		self._poll_attempts = poll_attempts
		self._poll_delay = poll_delay
		self._step_retries = step_retries
		self._self_check = self_check
		self._events = events
		self._transport = transport
		self._self_check_transport = self_check_transport
		self._inflight: dict[str, asyncio.Task[Certificate]] = {}
		# Certificate id each in-flight task renews (None for a fresh issuance)
		self._inflight_target: dict[str, Optional[str]] = {}
		self._states: dict[str, IssuanceState] = {}

	@classmethod
	def from_config(cls, cfg, *, store: CertificateStore, events: EventBus | None = None, **kwargs) -> IssuanceWorkflow:
		return cls(
			store=store,
			challenges=ChallengeStore(cfg.acme_webroot),
			directory_url=cfg.acme_directory_url,
			accounts_dir=cfg.accounts_dir,
			locks_dir=cfg.certs_dir / ".locks",
			default_email=cfg.acme_email,
			timeout=cfg.io_timeout,
			poll_attempts=cfg.acme_poll_attempts,
			poll_delay=cfg.acme_poll_delay,
			step_retries=cfg.acme_step_retries,
			self_check=cfg.acme_self_check,
			events=events,
			**kwargs,
		)

	# ------------------------------------------------------------------
	# public API
	# ------------------------------------------------------------------

	async def issue_certificate(self, domain: str, email: Optional[str] = None) -> Certificate:
		"""Obtain a new certificate for ``domain`` (new id)."""
		domain = normalize_domain(domain)
		contact = email or self._default_email
		if not contact:
			raise ValidationError("a contact email is required for ACME issuance")
		return await self._run(domain, contact, None)

	async def renew_certificate(self, domain: str, cert_id: str) -> Certificate:
		"""Re-issue ``cert_id`` in place; the id and file paths stay the same."""
		domain = normalize_domain(domain)
		existing = self._store.require(cert_id)
		if existing.domain != domain:
			raise ValidationError(f"certificate {cert_id!r} belongs to {existing.domain!r}, not {domain!r}")
		if not existing.is_acme:
			raise ValidationError(f"certificate {cert_id!r} was supplied externally and cannot be renewed via ACME")
		contact = existing.email or self._default_email
		if not contact:
			raise ValidationError("a contact email is required for ACME renewal")
		return await self._run(domain, contact, cert_id)

	def in_flight(self, domain: str) -> bool:
		task = self._inflight.get(domain.lower())
		return task is not None and not task.done()

	def get_state(self, domain: str) -> Optional[IssuanceState]:
		return self._states.get(domain.lower())

	def list_states(self) -> list[IssuanceState]:
		return [self._states[d] for d in sorted(self._states)]

	# ------------------------------------------------------------------
	# internals
	# ------------------------------------------------------------------

	async def _run(self, domain: str, email: str, cert_id: Optional[str]) -> Certificate:
		while True:
			task = self._inflight.get(domain)
			if task is None or task.done():
				task = asyncio.create_task(self._issue(domain, email, cert_id), name=f"acme:{domain}")
				self._inflight[domain] = task
				self._inflight_target[domain] = cert_id
				task.add_done_callback(lambda t, d=domain: self._forget(d, t))
				break
			# A renewal only shares a task that renews the same certificate
			if cert_id is None or self._inflight_target.get(domain) == cert_id:
				_log.info("ACME_ATTACH domain=%s (joining in-flight issuance)", domain)
				break
			_log.info("ACME_WAIT domain=%s id=%s (another request in flight)", domain, cert_id)
			await asyncio.wait({task})
		# A cancelled caller must not cancel the shared issuance
		return await asyncio.shield(task)

	def _forget(self, domain: str, task: asyncio.Task) -> None:
		if self._inflight.get(domain) is task:
			del self._inflight[domain]
			self._inflight_target.pop(domain, None)
		if not task.cancelled():
			task.exception()

	def _advance(self, state: IssuanceState, step: IssuanceStep) -> None:
		state.step = step
		state.updated_at = utcnow()
		_log.info("ACME_STEP domain=%s step=%s", state.domain, step.value)

	async def _issue(self, domain: str, email: str, cert_id: Optional[str]) -> Certificate:
		now = utcnow()
		state = IssuanceState(domain=domain, renewal=cert_id is not None, cert_id=cert_id, started_at=now, updated_at=now)
		self._states[domain] = state

		lock = DomainLock(self._locks_dir, domain)
		try:
			if not lock.acquire():
				raise ConcurrencyError(f"certificate request for {domain!r} already in progress in another worker")
			cert = await self._drive(state, email)
		except Exception as raw:
			exc = _as_certificate_error(raw, domain)
			state.step = IssuanceStep.FAILED
			state.error = str(exc)
			state.updated_at = utcnow()
			_log.error("ACME_FAILED domain=%s type=%s error=%s", domain, type(exc).__name__, exc)
			if self._events is not None:
				await self._events.publish(
					IssuanceFailed(domain=domain, error=str(exc), error_type=type(exc).__name__, cert_id=cert_id)
				)
			if exc is raw:
				raise
			raise exc from raw
		finally:
			lock.release()

		if self._events is not None:
			event_cls = CertificateRenewed if cert_id else CertificateIssued
			await self._events.publish(event_cls(cert_id=cert.id, domain=domain, expires_at=cert.expires_at))
		return cert

	async def _drive(self, state: IssuanceState, email: str) -> Certificate:
		domain = state.domain
		async with ACMEClient(
			self._directory_url,
			self._accounts_dir / account_dir_name(email),
			timeout=self._timeout,
			retries=self._step_retries,
			retry_delay=self._poll_delay,
			transport=self._transport,
		) as client:
			await client.register_or_fetch_account(email)
			self._advance(state, IssuanceStep.KEY_READY)

			order_url, order = await client.new_order(domain)
			state.order_url = order_url
			self._advance(state, IssuanceStep.ORDER_CREATED)
			_log.info("ACME_ORDER domain=%s url=%s", domain, order_url)

			auth_urls = order.get("authorizations") or []
			if not auth_urls:
				raise CertificateError("order has no authorizations", domain=domain)
			for auth_url in auth_urls:
				await self._authorize(client, state, auth_url)
			self._advance(state, IssuanceStep.CHALLENGE_VALID)

			order = await client.poll_order(
				order_url, domain=domain, until=("ready", "valid"),
				attempts=self._poll_attempts, delay=self._poll_delay,
			)
			if order.get("status") != "ready":
				raise CertificateError(f"order in unexpected state {order.get('status')!r} before finalize", domain=domain)
			self._advance(state, IssuanceStep.FINALIZING)
			order, key_pem = await client.finalize_order(order["finalize"], domain)
			if order.get("status") != "valid":
				order = await client.poll_order(
					order_url, domain=domain, until=("valid",),
					attempts=self._poll_attempts, delay=self._poll_delay,
				)
			cert_url = order.get("certificate")
			if not cert_url:
				raise CertificateError("no certificate URL in finalized order", domain=domain)
			fullchain = await client.download_certificate(cert_url, domain)

		cert_id = state.cert_id or new_certificate_id(domain)
		cert = self._store.save(cert_id, domain, fullchain, key_pem, is_acme=True, email=email)
		state.cert_id = cert.id
		self._advance(state, IssuanceStep.ISSUED)
		_log.info("ACME_ISSUED domain=%s id=%s expires_at=%s", domain, cert.id, cert.expires_at.isoformat())
		return cert

	async def _authorize(self, client: ACMEClient, state: IssuanceState, auth_url: str) -> None:
		domain = state.domain
		authz = await client.get_authorization(auth_url, domain)
		if authz.get("status") == "valid":
			_log.debug("ACME_AUTHZ domain=%s already valid", domain)
			return
		challenge = client.http01_challenge(authz)
		token = challenge["token"]
		key_authorization = client.key_authorization(token)
		self._challenges.publish(token, key_authorization)
		try:
			self._advance(state, IssuanceStep.CHALLENGE_PENDING)
			if self._self_check:
				await self_check(
					domain, token, key_authorization,
					timeout=self._timeout, transport=self._self_check_transport,
				)
			await client.respond_to_challenge(challenge["url"], domain)
			await client.poll_authorization(
				auth_url, domain=domain, attempts=self._poll_attempts, delay=self._poll_delay,
			)
		finally:
			self._challenges.remove(token)
