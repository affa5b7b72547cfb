#!/usr/bin/env python3
#
# app/utils/events.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""In-process event bus for certificate and configuration notifications.

Events are frozen dataclasses; subscribers register per event class and may be
sync or async. A failing subscriber is logged and never affects the publisher
or other subscribers.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Union

from app.utils.time import utcnow

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Event:
	occurred_at: datetime = field(default_factory=utcnow, kw_only=True)


@dataclass(frozen=True)
class CertificateIssued(Event):
	cert_id: str
	domain: str
	expires_at: datetime


@dataclass(frozen=True)
class CertificateRenewed(Event):
	cert_id: str
	domain: str
	expires_at: datetime


@dataclass(frozen=True)
class IssuanceFailed(Event):
	domain: str
	error: str
	error_type: str
	cert_id: str | None = None


@dataclass(frozen=True)
class ConfigApplied(Event):
	generation: str
	files: tuple[str, ...]


@dataclass(frozen=True)
class ConfigApplyFailed(Event):
	stage: str
	error: str


Subscriber = Union[Callable[[Event], None], Callable[[Event], Awaitable[None]]]


class EventBus:
	"""Publish/subscribe dispatcher keyed by event class."""

	def __init__(self) -> None:
		self._subscribers: dict[type[Event], list[Subscriber]] = defaultdict(list)

	def subscribe(self, event_type: type[Event], callback: Subscriber) -> Callable[[], None]:
		"""Register ``callback`` for ``event_type`` (and its subclasses).

		Returns a function that removes the subscription again.
		"""
		self._subscribers[event_type].append(callback)
		_log.debug("EVENTS subscribe type=%s callback=%s", event_type.__name__, getattr(callback, "__name__", callback))

		def _unsubscribe() -> None:
			try:
				self._subscribers[event_type].remove(callback)
			except ValueError:
				pass

		return _unsubscribe

	async def publish(self, event: Event) -> None:
		callbacks: list[Subscriber] = []
		for event_type, subs in list(self._subscribers.items()):
			if isinstance(event, event_type):
				callbacks.extend(subs)
		if not callbacks:
			return
		await asyncio.gather(*(self._invoke(cb, event) for cb in callbacks))

	async def _invoke(self, callback: Subscriber, event: Event) -> None:
		try:
			result = callback(event)
			if inspect.isawaitable(result):
				await result
		except Exception:
			_log.exception(
				"EVENTS subscriber_failed type=%s callback=%s",
				type(event).__name__, getattr(callback, "__name__", callback),
			)

	def clear(self) -> None:
		self._subscribers.clear()
