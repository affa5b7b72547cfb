#!/usr/bin/env python3
#
# app/models/rules.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Routing rule models.

These models only enforce structure (types, ranges). Whether a value is safe
to place into an nginx configuration is decided by ``app.proxy.validation``,
so that a rule can be stored and shown even when it cannot be rendered.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, Field


class ProxyProtocol(str, Enum):
	HTTP = "HTTP"
	HTTPS = "HTTPS"
	TCP = "TCP"
	UDP = "UDP"


class CertificateStatus(str, Enum):
	PENDING = "PENDING"
	VALID = "VALID"
	EXPIRED = "EXPIRED"
	ERROR = "ERROR"


class LoadBalancingMethod(str, Enum):
	ROUND_ROBIN = "round_robin"
	LEAST_CONN = "least_conn"
	IP_HASH = "ip_hash"
	RANDOM = "random"


class WafMode(str, Enum):
	DETECTION = "detection"
	BLOCKING = "blocking"


class WafRuleset(str, Enum):
	CORE = "core"
	SQL = "sql"
	XSS = "xss"
	LFI = "lfi"
	RFI = "rfi"
	SCANNER = "scanner"
	SESSION = "session"
	PROTOCOL = "protocol"
	CUSTOM = "custom"


class HealthCheck(BaseModel):
	"""Passive health check plus an internal health-check location."""
	path: str = "/"
	interval: int = Field(default=30, ge=1, description="Seconds a failed server stays out of rotation")
	timeout: int = Field(default=5, ge=1)
	retries: int = Field(default=3, ge=1, description="Failures before a server is marked down")


class LoadBalancingTarget(BaseModel):
	target: str = Field(..., description="host:port")
	weight: int = Field(default=1, ge=1, le=1000)


class LoadBalancing(BaseModel):
	method: LoadBalancingMethod = LoadBalancingMethod.ROUND_ROBIN
	targets: list[LoadBalancingTarget] = Field(default_factory=list)
	sticky: bool = False
	cookie_name: Optional[str] = None


class AdvancedProxyConfig(BaseModel):
	proxy_connect_timeout: int = Field(default=60, ge=1)
	proxy_send_timeout: int = Field(default=60, ge=1)
	proxy_read_timeout: int = Field(default=60, ge=1)
	proxy_buffer_size: Optional[str] = None
	proxy_buffers: Optional[str] = None
	proxy_busy_buffers_size: Optional[str] = None
	client_max_body_size: Optional[str] = None
	cache_enabled: bool = False
	cache_duration: Optional[str] = None
	cors_enabled: bool = False
	cors_allow_origin: Optional[str] = None
	cors_allow_methods: Optional[str] = None
	cors_allow_headers: Optional[str] = None
	cors_allow_credentials: bool = False


class SecurityHeaders(BaseModel):
	x_frame_options: Optional[str] = None
	x_content_type_options: Optional[str] = None
	x_xss_protection: Optional[str] = None
	strict_transport_security: Optional[str] = None
	content_security_policy: Optional[str] = None
	referrer_policy: Optional[str] = None
	permissions_policy: Optional[str] = None
	custom_headers: dict[str, str] = Field(default_factory=dict)


class WafConfig(BaseModel):
	enabled: bool = True
	mode: WafMode = WafMode.DETECTION
	rulesets: list[WafRuleset] = Field(default_factory=lambda: [WafRuleset.CORE])
	custom_rules: Optional[str] = None


class IpAccessRule(BaseModel):
	ip: str
	action: Literal["allow", "deny"]
	comment: Optional[str] = None


class IpAccessControl(BaseModel):
	enabled: bool = True
	default_action: Literal["allow", "deny"] = "allow"
	rules: list[IpAccessRule] = Field(default_factory=list)


class RateLimit(BaseModel):
	enabled: bool = True
	requests_per_second: int = Field(default=10, ge=1)
	burst: int = Field(default=0, ge=0)
	nodelay: bool = False
	per_ip: bool = True
	zone: Optional[str] = None
	log_level: Optional[Literal["info", "notice", "warn", "error"]] = None
	response_code: Optional[int] = Field(default=None, ge=400, le=599)


class RewriteRule(BaseModel):
	pattern: str
	replacement: str
	flag: str = ""


class RoutingRule(BaseModel):
	"""A declarative routing rule: one domain (or host) forwarded to one target."""
	id: str = Field(..., min_length=1, max_length=64)
	name: str = ""
	enabled: bool = True
	domain: Optional[str] = None
	source_host: Optional[str] = None
	source_path: str = "/"
	target: str = Field(..., description="Opaque host:port of the upstream")
	protocol: ProxyProtocol = ProxyProtocol.HTTP

	ssl_enabled: bool = False
	# Certificate reference: explicit paths OR a stored certificate id OR none
	ssl_cert_path: Optional[str] = None
	ssl_key_path: Optional[str] = None
	certificate_id: Optional[str] = None
	acme_enabled: bool = False
	acme_email: Optional[str] = None
	certificate_status: Optional[CertificateStatus] = None

	headers: dict[str, str] = Field(default_factory=dict)
	response_headers: dict[str, str] = Field(default_factory=dict)
	health_check: Optional[HealthCheck] = None
	load_balancing: Optional[LoadBalancing] = None
	advanced: Optional[AdvancedProxyConfig] = None
	security_headers: Optional[SecurityHeaders] = None
	waf: Optional[WafConfig] = None
	ip_access: Optional[IpAccessControl] = None
	rate_limit: Optional[RateLimit] = None
	rewrite_rules: list[RewriteRule] = Field(default_factory=list)
	custom_config: Optional[str] = None

	created_at: Optional[datetime] = None
	updated_at: Optional[datetime] = None

	@property
	def server_name(self) -> Optional[str]:
		return self.domain or self.source_host


class RoutingRuleUpdate(BaseModel):
	"""Partial update payload; unset fields keep their stored value."""
	name: Optional[str] = None
	enabled: Optional[bool] = None
	domain: Optional[str] = None
	source_host: Optional[str] = None
	source_path: Optional[str] = None
	target: Optional[str] = None
	protocol: Optional[ProxyProtocol] = None
	ssl_enabled: Optional[bool] = None
	ssl_cert_path: Optional[str] = None
	ssl_key_path: Optional[str] = None
	certificate_id: Optional[str] = None
	acme_enabled: Optional[bool] = None
	acme_email: Optional[str] = None
	headers: Optional[dict[str, str]] = None
	response_headers: Optional[dict[str, str]] = None
	health_check: Optional[HealthCheck] = None
	load_balancing: Optional[LoadBalancing] = None
	advanced: Optional[AdvancedProxyConfig] = None
	security_headers: Optional[SecurityHeaders] = None
	waf: Optional[WafConfig] = None
	ip_access: Optional[IpAccessControl] = None
	rate_limit: Optional[RateLimit] = None
	rewrite_rules: Optional[list[RewriteRule]] = None
	custom_config: Optional[str] = None
