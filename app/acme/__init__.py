#!/usr/bin/env python3
#
# app/acme/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""ACME v2 certificate issuance and storage."""

from .challenges import ChallengeStore, self_check
from .client import ACMEClient, jwk_thumbprint
from .store import CertificateStore, split_pem_chain
from .workflow import DomainLock, IssuanceWorkflow

__all__ = [
	"ACMEClient",
	"CertificateStore",
	"ChallengeStore",
	"DomainLock",
	"IssuanceWorkflow",
	"jwk_thumbprint",
	"self_check",
	"split_pem_chain",
]
