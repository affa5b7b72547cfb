#!/usr/bin/env python3
#
# app/models/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Pydantic models for Kontainers."""

from .certificates import (
	Certificate,
	CertificatePublic,
	ImportRequest,
	IssuanceState,
	IssuanceStep,
	IssueRequest,
)
from .rules import (
	AdvancedProxyConfig,
	CertificateStatus,
	HealthCheck,
	IpAccessControl,
	IpAccessRule,
	LoadBalancing,
	LoadBalancingMethod,
	LoadBalancingTarget,
	ProxyProtocol,
	RateLimit,
	RewriteRule,
	RoutingRule,
	RoutingRuleUpdate,
	SecurityHeaders,
	WafConfig,
	WafMode,
	WafRuleset,
)

__all__ = [
	# Certificates
	"Certificate",
	"CertificatePublic",
	"ImportRequest",
	"IssuanceState",
	"IssuanceStep",
	"IssueRequest",
	# Rules
	"AdvancedProxyConfig",
	"CertificateStatus",
	"HealthCheck",
	"IpAccessControl",
	"IpAccessRule",
	"LoadBalancing",
	"LoadBalancingMethod",
	"LoadBalancingTarget",
	"ProxyProtocol",
	"RateLimit",
	"RewriteRule",
	"RoutingRule",
	"RoutingRuleUpdate",
	"SecurityHeaders",
	"WafConfig",
	"WafMode",
	"WafRuleset",
]
