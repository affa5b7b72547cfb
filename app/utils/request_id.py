#!/usr/bin/env python3
#
# app/utils/request_id.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Request ID middleware and log correlation."""

from __future__ import annotations

import logging
import re
import uuid
from contextvars import ContextVar
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

# Client supplied IDs end up in log lines and response headers
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._-]{1,64}$")

_current_request_id: ContextVar[str] = ContextVar("request_id", default="-")


class RequestIDFilter(logging.Filter):
	"""Stamp every log record with the ID of the request being served."""

	def filter(self, record: logging.LogRecord) -> bool:
		record.request_id = _current_request_id.get()
		return True


class RequestIDMiddleware(BaseHTTPMiddleware):
	"""Reuse a sane ``X-Request-ID`` from the client or mint a new one."""

	async def dispatch(self, request: Request, call_next: Callable) -> Response:
		request_id = request.headers.get("X-Request-ID", "")
		if not _REQUEST_ID_RE.match(request_id):
			request_id = uuid.uuid4().hex

		request.state.request_id = request_id
		token = _current_request_id.set(request_id)
		try:
			response = await call_next(request)
		finally:
			_current_request_id.reset(token)

		response.headers["X-Request-ID"] = request_id
		return response
