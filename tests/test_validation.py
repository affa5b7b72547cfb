#!/usr/bin/env python3
#
# tests/test_validation.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Input validation for values that end up in nginx configuration."""

from __future__ import annotations

import pytest

from app.errors import ValidationError
from app.models.rules import ProxyProtocol, RoutingRule
from app.proxy.validation import (
	check_balanced,
	check_ip_source,
	normalize_domain,
	parse_target,
	validate_rule,
)


class TestNormalizeDomain:
	"""DNS-label syntax and normalization."""

	def test_lowercases_and_strips_trailing_dot(self):
		assert normalize_domain("App.Example.COM.") == "app.example.com"

	def test_idna_is_encoded(self):
		assert normalize_domain("bücher.example") == "xn--bcher-kva.example"

	@pytest.mark.parametrize("value", [
		"",
		"localhost",
		"not a domain",
		"-bad.example.com",
		"bad-.example.com",
		"a..example.com",
		"example.123",
		"app.example.com\nserver_name evil",
	])
	def test_rejects_invalid(self, value):
		with pytest.raises(ValidationError):
			normalize_domain(value)

	def test_wildcard_only_when_allowed(self):
		assert normalize_domain("*.example.com", allow_wildcard=True) == "*.example.com"
		with pytest.raises(ValidationError):
			normalize_domain("*.example.com")


class TestParseTarget:

	def test_host_and_port(self):
		assert parse_target("c1:8080") == ("c1", 8080)

	def test_bracketed_ipv6(self):
		assert parse_target("[::1]:443") == ("[::1]", 443)

	@pytest.mark.parametrize("value", ["c1", "c1:0", "c1:65536", "c1:http", ":80", "c 1:80", "[::1]80"])
	def test_rejects_invalid(self, value):
		with pytest.raises(ValidationError):
			parse_target(value)


class TestFragments:

	def test_balanced_ignores_quotes_and_comments(self):
		check_balanced('location /x { return 200 "}"; } # {', "custom_config")

	@pytest.mark.parametrize("fragment", ["location / {", "}", 'add_header X "open;'])
	def test_unbalanced(self, fragment):
		with pytest.raises(ValidationError):
			check_balanced(fragment, "custom_config")

	def test_ip_source_accepts_cidr(self):
		assert check_ip_source("10.0.0.1/8", "ip") == "10.0.0.0/8"

	def test_ip_source_rejects_garbage(self):
		with pytest.raises(ValidationError):
			check_ip_source("10.0.0.300", "ip")


class TestValidateRule:
	"""Whole-rule validation returns the server name or raises."""

	def test_returns_normalized_domain(self):
		rule = RoutingRule(id="r1", domain="App.Example.com", target="c1:8080")
		assert validate_rule(rule) == "app.example.com"

	def test_source_host_wildcard(self):
		rule = RoutingRule(id="r1", source_host="*.example.com", target="c1:8080")
		assert validate_rule(rule) == "*.example.com"

	def test_catch_all_without_host(self):
		assert validate_rule(RoutingRule(id="r1", target="c1:8080")) is None

	@pytest.mark.parametrize("rule_id", ["bad id", "x/../y", "r1;"])
	def test_rejects_bad_rule_id(self, rule_id):
		with pytest.raises(ValidationError):
			validate_rule(RoutingRule(id=rule_id, target="c1:8080"))

	def test_rejects_stream_protocols(self):
		rule = RoutingRule(id="r1", target="c1:5432", protocol=ProxyProtocol.TCP)
		with pytest.raises(ValidationError):
			validate_rule(rule)

	def test_paths_must_come_in_pairs(self):
		rule = RoutingRule(id="r1", domain="a.example.com", target="c1:80", ssl_cert_path="/etc/ssl/a.pem")
		with pytest.raises(ValidationError):
			validate_rule(rule)

	def test_paths_and_certificate_id_are_exclusive(self):
		rule = RoutingRule(
			id="r1",
			domain="a.example.com",
			target="c1:80",
			ssl_cert_path="/etc/ssl/a.pem",
			ssl_key_path="/etc/ssl/a.key",
			certificate_id="le-a-1",
		)
		with pytest.raises(ValidationError):
			validate_rule(rule)

	def test_acme_requires_domain(self):
		rule = RoutingRule(id="r1", source_host="a.example.com", target="c1:80", acme_enabled=True)
		with pytest.raises(ValidationError):
			validate_rule(rule)

	def test_header_injection_rejected(self):
		rule = RoutingRule(id="r1", target="c1:80", headers={"X-Test": "a\nproxy_pass http://evil"})
		with pytest.raises(ValidationError):
			validate_rule(rule)

	def test_source_path_must_be_absolute(self):
		rule = RoutingRule(id="r1", target="c1:80", source_path="api")
		with pytest.raises(ValidationError):
			validate_rule(rule)
