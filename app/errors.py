#!/usr/bin/env python3
#
# app/errors.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Error taxonomy shared by the proxy and certificate subsystems."""

from __future__ import annotations


class KontainersError(Exception):
	"""Base class for all recoverable engine errors."""

	def __init__(self, message: str, *, detail: str | None = None):
		super().__init__(message)
		self.message = message
		# Raw diagnostic text (nginx stderr, ACME problem document, ...)
		self.detail = detail

	def __str__(self) -> str:
		if self.detail:
			return f"{self.message}: {self.detail}"
		return self.message


class ValidationError(KontainersError):
	"""Malformed rule, domain or port. Raised before any side effect."""


class NotFoundError(KontainersError):
	"""Referenced rule or certificate does not exist."""


class ConfigurationError(KontainersError):
	"""Rendering or nginx syntax test failed. Active configuration is untouched."""


class ReloadError(KontainersError):
	"""Configuration passed the syntax test but the reload signal failed.

	Nginx keeps serving with its previous in-memory configuration.
	"""


class ConcurrencyError(KontainersError):
	"""Another operation for the same domain is already in flight."""


class CertificateError(KontainersError):
	"""Certificate issuance or renewal failed."""

	def __init__(self, message: str, *, domain: str | None = None, detail: str | None = None):
		super().__init__(message, detail=detail)
		self.domain = domain


class DomainVerificationFailed(CertificateError):
	"""HTTP-01 validation failed (token unreachable or wrong response)."""


class RateLimited(CertificateError):
	"""The CA rejected the request because of rate limits."""

	def __init__(
		self,
		message: str,
		*,
		domain: str | None = None,
		detail: str | None = None,
		retry_after: str | None = None,
	):
		super().__init__(message, domain=domain, detail=detail)
		self.retry_after = retry_after


class NetworkError(CertificateError):
	"""Transport failure or timeout while talking to the CA."""


class OrderExpired(CertificateError):
	"""The ACME order became invalid or expired before finalization."""


__all__ = [
	"KontainersError",
	"ValidationError",
	"NotFoundError",
	"ConfigurationError",
	"ReloadError",
	"ConcurrencyError",
	"CertificateError",
	"DomainVerificationFailed",
	"RateLimited",
	"NetworkError",
	"OrderExpired",
]
