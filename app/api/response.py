#!/usr/bin/env python3
#
# app/api/response.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Common API response helpers and the error-to-status mapping."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..errors import (
	CertificateError,
	ConcurrencyError,
	ConfigurationError,
	DomainVerificationFailed,
	KontainersError,
	NetworkError,
	NotFoundError,
	RateLimited,
	ReloadError,
	ValidationError,
)

_log = logging.getLogger(__name__)

# Most specific class first
_STATUS_MAP: tuple[tuple[type[KontainersError], int], ...] = (
	(ValidationError, 422),
	(NotFoundError, 404),
	(ConcurrencyError, 409),
	(ConfigurationError, 409),
	(ReloadError, 503),
	(RateLimited, 429),
	(DomainVerificationFailed, 400),
	(NetworkError, 504),
	(CertificateError, 502),
)


def ok_response(
	*,
	message: str | None = None,
	data: Any = None,
	**extra: Any,
) -> dict[str, Any]:
	"""Build a normalized success response with a stable ``status`` field."""
	payload: dict[str, Any] = {"status": "ok"}
	if message is not None:
		payload["message"] = message
	if data is not None:
		payload["data"] = data
	if extra:
		payload.update(extra)
	return payload


def status_for(exc: KontainersError) -> int:
	for cls, status in _STATUS_MAP:
		if isinstance(exc, cls):
			return status
	return 500


def error_response(exc: KontainersError) -> JSONResponse:
	body: dict[str, Any] = {
		"status": "error",
		"error": type(exc).__name__,
		"message": exc.message,
	}
	if exc.detail:
		body["detail"] = exc.detail
	headers = {}
	if isinstance(exc, CertificateError) and exc.domain:
		body["domain"] = exc.domain
	if isinstance(exc, RateLimited) and exc.retry_after:
		headers["Retry-After"] = exc.retry_after
	return JSONResponse(status_code=status_for(exc), content=body, headers=headers or None)


async def _handle_engine_error(request: Request, exc: KontainersError) -> JSONResponse:
	response = error_response(exc)
	level = logging.WARNING if response.status_code < 500 else logging.ERROR
	_log.log(
		level, "API_ERROR path=%s status=%d type=%s error=%s",
		request.url.path, response.status_code, type(exc).__name__, exc,
	)
	return response


def register_exception_handlers(app: FastAPI) -> None:
	app.add_exception_handler(KontainersError, _handle_engine_error)
