#!/usr/bin/env python3
#
# app/models/certificates.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Certificate and issuance-state models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, EmailStr, Field

from ..utils.time import days_remaining as _days_remaining


class Certificate(BaseModel):
	"""Stored certificate material plus metadata.

	``id`` never changes once assigned; renewal replaces the PEM content and
	``expires_at`` in place. File paths are derived from the id.
	"""
	id: str
	domain: str
	certificate_pem: str = Field(..., repr=False)
	private_key_pem: str = Field(..., repr=False)
	chain_pem: Optional[str] = Field(None, repr=False)
	expires_at: datetime
	issued_at: Optional[datetime] = None
	is_acme: bool = True
	email: Optional[str] = None
	cert_path: str
	key_path: str
	chain_path: Optional[str] = None
	created_at: Optional[datetime] = None
	updated_at: Optional[datetime] = None

	def days_remaining(self, now: Optional[datetime] = None) -> int:
		return _days_remaining(self.expires_at, now)

	def to_public(self, renewal_threshold_days: int, now: Optional[datetime] = None) -> CertificatePublic:
		remaining = self.days_remaining(now)
		return CertificatePublic(
			id=self.id,
			domain=self.domain,
			expires_at=self.expires_at,
			issued_at=self.issued_at,
			is_acme=self.is_acme,
			email=self.email,
			cert_path=self.cert_path,
			key_path=self.key_path,
			chain_path=self.chain_path,
			days_remaining=remaining,
			needs_renewal=remaining <= renewal_threshold_days,
			expired=remaining < 0,
			created_at=self.created_at,
			updated_at=self.updated_at,
		)


class CertificatePublic(BaseModel):
	"""API representation (no key material)."""
	id: str
	domain: str
	expires_at: datetime
	issued_at: Optional[datetime] = None
	is_acme: bool
	email: Optional[str] = None
	cert_path: str
	key_path: str
	chain_path: Optional[str] = None
	days_remaining: int
	needs_renewal: bool
	expired: bool
	created_at: Optional[datetime] = None
	updated_at: Optional[datetime] = None


class IssueRequest(BaseModel):
	domain: str = Field(..., min_length=1, max_length=253)
	email: Optional[EmailStr] = None


class ImportRequest(BaseModel):
	"""Externally supplied certificate (not renewed automatically)."""
	certificate_pem: str = Field(..., min_length=1)
	private_key_pem: str = Field(..., min_length=1, repr=False)
	chain_pem: Optional[str] = None
	domain: Optional[str] = Field(None, max_length=253)


class IssuanceStep(str, Enum):
	REQUESTED = "REQUESTED"
	KEY_READY = "KEY_READY"
	ORDER_CREATED = "ORDER_CREATED"
	CHALLENGE_PENDING = "CHALLENGE_PENDING"
	CHALLENGE_VALID = "CHALLENGE_VALID"
	FINALIZING = "FINALIZING"
	ISSUED = "ISSUED"
	FAILED = "FAILED"


class IssuanceState(BaseModel):
	"""One ACME attempt for one domain (transient, in-memory)."""
	domain: str
	step: IssuanceStep = IssuanceStep.REQUESTED
	renewal: bool = False
	cert_id: Optional[str] = None
	order_url: Optional[str] = None
	error: Optional[str] = None
	started_at: datetime
	updated_at: datetime

	@property
	def active(self) -> bool:
		return self.step not in (IssuanceStep.ISSUED, IssuanceStep.FAILED)
