#!/usr/bin/env python3
#
# app/proxy/validation.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Input validation for values that end up inside nginx configuration.

Every check raises :class:`app.errors.ValidationError`; nothing here touches
the filesystem.
"""

from __future__ import annotations

import ipaddress
import re

from ..errors import ValidationError
from ..models.rules import ProxyProtocol, RoutingRule
from .constants import (
	BUFFERS_RE,
	CONTROL_CHARS_RE,
	COOKIE_NAME_RE,
	DOMAIN_LABEL_RE,
	DURATION_RE,
	HEADER_NAME_RE,
	REWRITE_FLAGS,
	RULE_ID_RE,
	SIZE_RE,
	TLD_RE,
	UPSTREAM_HOST_RE,
	ZONE_NAME_RE,
)

# Characters that would end or open a directive outside of quotes
_PATH_FORBIDDEN_RE = re.compile(r"[\s;{}\"'\\]")


def check_text(value: str, field: str) -> str:
	"""Reject control characters (newline injection) in a single-line value."""
	if CONTROL_CHARS_RE.search(value):
		raise ValidationError(f"{field} contains control characters", detail=repr(value))
	return value


def normalize_domain(domain: str, *, field: str = "domain", allow_wildcard: bool = False) -> str:
	"""Validate DNS-label syntax and return the lowercase ASCII form."""
	if not isinstance(domain, str) or not domain.strip():
		raise ValidationError(f"{field} is required")
	check_text(domain, field)
	value = domain.strip().rstrip(".").lower()
	wildcard = False
	if allow_wildcard and value.startswith("*."):
		wildcard = True
		value = value[2:]
	try:
		ascii_value = value.encode("idna").decode("ascii")
	except UnicodeError as exc:
		raise ValidationError(f"invalid {field}: {domain!r}") from exc
	if len(ascii_value) > 253:
		raise ValidationError(f"{field} too long: {domain!r}")
	labels = ascii_value.split(".")
	if len(labels) < 2:
		raise ValidationError(f"{field} must have at least two labels: {domain!r}")
	for label in labels:
		if not DOMAIN_LABEL_RE.fullmatch(label):
			raise ValidationError(f"invalid {field} label {label!r} in {domain!r}")
	if not TLD_RE.fullmatch(labels[-1]):
		raise ValidationError(f"invalid top-level label in {field}: {domain!r}")
	return f"*.{ascii_value}" if wildcard else ascii_value


def parse_target(target: str, *, field: str = "target") -> tuple[str, int]:
	"""Split ``host:port`` and validate both parts.

	IPv6 hosts must be bracketed (``[::1]:8080``).
	"""
	if not isinstance(target, str) or not target.strip():
		raise ValidationError(f"{field} is required")
	check_text(target, field)
	value = target.strip()
	if value.startswith("["):
		host, sep, port_part = value[1:].partition("]:")
		if not sep:
			raise ValidationError(f"{field} must be [ipv6]:port", detail=value)
		try:
			ipaddress.IPv6Address(host)
		except ValueError as exc:
			raise ValidationError(f"invalid IPv6 address in {field}", detail=value) from exc
		host = f"[{host}]"
	else:
		host, sep, port_part = value.rpartition(":")
		if not sep or not host:
			raise ValidationError(f"{field} must be host:port", detail=value)
		if not UPSTREAM_HOST_RE.fullmatch(host):
			raise ValidationError(f"invalid host in {field}", detail=value)
	if not port_part.isdigit():
		raise ValidationError(f"invalid port in {field}", detail=value)
	port = int(port_part)
	if not 1 <= port <= 65535:
		raise ValidationError(f"port out of range (1-65535) in {field}", detail=value)
	return host, port


def check_uri_path(path: str, field: str) -> str:
	check_text(path, field)
	if not path.startswith("/"):
		raise ValidationError(f"{field} must start with '/'", detail=path)
	if _PATH_FORBIDDEN_RE.search(path):
		raise ValidationError(f"{field} contains forbidden characters", detail=path)
	return path


def check_file_path(path: str, field: str) -> str:
	check_text(path, field)
	if not path.startswith("/"):
		raise ValidationError(f"{field} must be an absolute path", detail=path)
	if _PATH_FORBIDDEN_RE.search(path):
		raise ValidationError(f"{field} contains forbidden characters", detail=path)
	return path


def check_header_name(name: str, field: str) -> str:
	if not HEADER_NAME_RE.fullmatch(name or ""):
		raise ValidationError(f"invalid header name in {field}", detail=repr(name))
	return name


def check_headers(headers: dict[str, str], field: str) -> None:
	for name, value in headers.items():
		check_header_name(name, field)
		check_text(value, f"{field}.{name}")


def check_ip_source(value: str, field: str) -> str:
	"""Accept a single address or a CIDR network."""
	check_text(value, field)
	try:
		return str(ipaddress.ip_network(value.strip(), strict=False))
	except ValueError as exc:
		raise ValidationError(f"invalid IP address or CIDR in {field}", detail=value) from exc


def check_balanced(fragment: str, field: str) -> str:
	"""Check a raw nginx fragment for balanced braces, ignoring quotes and comments."""
	if "\x00" in fragment:
		raise ValidationError(f"{field} contains NUL bytes")
	depth = 0
	quote: str | None = None
	escaped = False
	in_comment = False
	for ch in fragment:
		if in_comment:
			if ch == "\n":
				in_comment = False
			continue
		if escaped:
			escaped = False
			continue
		if ch == "\\":
			escaped = True
			continue
		if quote:
			if ch == quote:
				quote = None
			continue
		if ch in ("'", '"'):
			quote = ch
		elif ch == "#":
			in_comment = True
		elif ch == "{":
			depth += 1
		elif ch == "}":
			depth -= 1
			if depth < 0:
				raise ValidationError(f"{field} has an unmatched '}}'")
	if quote:
		raise ValidationError(f"{field} has an unterminated quoted string")
	if depth != 0:
		raise ValidationError(f"{field} has unbalanced braces")
	return fragment


def _check_pattern(value: str | None, regex: re.Pattern[str], field: str) -> None:
	if value is not None and not regex.fullmatch(value):
		raise ValidationError(f"invalid value for {field}", detail=repr(value))


def validate_rule(rule: RoutingRule) -> str | None:
	"""Validate everything the renderer will emit.

	Returns the normalized server name (domain, else source host) or None.
	"""
	if not RULE_ID_RE.fullmatch(rule.id or ""):
		raise ValidationError("rule id must be 1-64 characters of [A-Za-z0-9_-]", detail=repr(rule.id))
	check_text(rule.name, "name")

	if rule.protocol in (ProxyProtocol.TCP, ProxyProtocol.UDP):
		raise ValidationError(f"protocol {rule.protocol.value} cannot be rendered as an HTTP server block")

	server_name: str | None = None
	if rule.domain is not None:
		server_name = normalize_domain(rule.domain)
	elif rule.source_host:
		server_name = normalize_domain(rule.source_host, field="source_host", allow_wildcard=True)

	check_uri_path(rule.source_path or "/", "source_path")
	parse_target(rule.target)

	if rule.ssl_cert_path or rule.ssl_key_path:
		if not (rule.ssl_cert_path and rule.ssl_key_path):
			raise ValidationError("ssl_cert_path and ssl_key_path must be set together")
		if rule.certificate_id:
			raise ValidationError("use either explicit certificate paths or certificate_id, not both")
		check_file_path(rule.ssl_cert_path, "ssl_cert_path")
		check_file_path(rule.ssl_key_path, "ssl_key_path")
	if rule.certificate_id is not None:
		check_text(rule.certificate_id, "certificate_id")
	if rule.acme_enabled and not rule.domain:
		raise ValidationError("ACME requires a domain")

	check_headers(rule.headers, "headers")
	check_headers(rule.response_headers, "response_headers")

	if rule.health_check:
		check_uri_path(rule.health_check.path, "health_check.path")

	lb = rule.load_balancing
	if lb:
		for i, t in enumerate(lb.targets):
			parse_target(t.target, field=f"load_balancing.targets[{i}]")
		if lb.sticky and not COOKIE_NAME_RE.fullmatch(lb.cookie_name or ""):
			raise ValidationError("sticky sessions need a cookie_name of [A-Za-z0-9_]", detail=repr(lb.cookie_name))

	adv = rule.advanced
	if adv:
		_check_pattern(adv.proxy_buffer_size, SIZE_RE, "advanced.proxy_buffer_size")
		_check_pattern(adv.proxy_busy_buffers_size, SIZE_RE, "advanced.proxy_busy_buffers_size")
		_check_pattern(adv.client_max_body_size, SIZE_RE, "advanced.client_max_body_size")
		_check_pattern(adv.proxy_buffers, BUFFERS_RE, "advanced.proxy_buffers")
		_check_pattern(adv.cache_duration, DURATION_RE, "advanced.cache_duration")
		for field in ("cors_allow_origin", "cors_allow_methods", "cors_allow_headers"):
			value = getattr(adv, field)
			if value is not None:
				check_text(value, f"advanced.{field}")

	sec = rule.security_headers
	if sec:
		for field, value in sec.model_dump(exclude={"custom_headers"}).items():
			if value is not None:
				check_text(value, f"security_headers.{field}")
		check_headers(sec.custom_headers, "security_headers.custom_headers")

	if rule.waf and rule.waf.enabled and rule.waf.custom_rules:
		if "'" in rule.waf.custom_rules:
			raise ValidationError("waf.custom_rules must not contain single quotes")
		check_balanced(rule.waf.custom_rules, "waf.custom_rules")

	if rule.ip_access and rule.ip_access.enabled:
		for i, entry in enumerate(rule.ip_access.rules):
			check_ip_source(entry.ip, f"ip_access.rules[{i}].ip")
			if entry.comment is not None:
				check_text(entry.comment, f"ip_access.rules[{i}].comment")

	rl = rule.rate_limit
	if rl and rl.enabled and rl.zone is not None:
		_check_pattern(rl.zone, ZONE_NAME_RE, "rate_limit.zone")

	for i, rw in enumerate(rule.rewrite_rules):
		if rw.flag not in REWRITE_FLAGS:
			raise ValidationError(f"unknown rewrite flag in rewrite_rules[{i}]", detail=repr(rw.flag))
		if not rw.pattern or not rw.replacement:
			raise ValidationError(f"rewrite_rules[{i}] needs pattern and replacement")
		check_text(rw.pattern, f"rewrite_rules[{i}].pattern")
		check_text(rw.replacement, f"rewrite_rules[{i}].replacement")

	if rule.custom_config:
		check_balanced(rule.custom_config, "custom_config")

	return server_name
