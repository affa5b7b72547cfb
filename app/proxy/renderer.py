#!/usr/bin/env python3
#
# app/proxy/renderer.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Render a routing rule into nginx configuration text.

``render`` is pure: the same rule, certificate and options always produce
byte-identical output. Mappings are emitted in sorted key order, lists in the
order given. Validation runs first, so invalid rules never yield partial
output.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from ..models.rules import LoadBalancingMethod, ProxyProtocol, RoutingRule, WafMode, WafRuleset
from .constants import ACME_CHALLENGE_PREFIX, CRS_RULESET_FILES, TLS_CIPHERS, TLS_PROTOCOLS
from .validation import check_file_path, parse_target, validate_rule

if TYPE_CHECKING:
	from ..models.certificates import Certificate
	from ..utils.config import Config

_INDENT = "    "

_SECURITY_HEADER_FIELDS: tuple[tuple[str, str], ...] = (
	("x_frame_options", "X-Frame-Options"),
	("x_content_type_options", "X-Content-Type-Options"),
	("x_xss_protection", "X-XSS-Protection"),
	("strict_transport_security", "Strict-Transport-Security"),
	("content_security_policy", "Content-Security-Policy"),
	("referrer_policy", "Referrer-Policy"),
	("permissions_policy", "Permissions-Policy"),
)

_WAF_ORDER = list(WafRuleset)


@dataclass(frozen=True)
class RenderOptions:
	"""Host paths the rendered configuration refers to."""
	acme_webroot: str = "/var/www/acme"
	log_dir: str = "/var/log/nginx"
	crs_dir: str = "/etc/nginx/modsecurity/coreruleset"
	cache_dir: str = "/var/cache/nginx/kontainers"

	@classmethod
	def from_config(cls, cfg: Config) -> RenderOptions:
		return cls(
			acme_webroot=str(cfg.acme_webroot),
			log_dir=str(cfg.nginx_log_dir),
			crs_dir=str(cfg.crs_dir),
			cache_dir=str(cfg.data_dir / "nginx-cache"),
		)


@dataclass(frozen=True)
class _TlsFiles:
	cert_path: str
	key_path: str
	chain_path: str | None = None


class _Conf:
	"""Tiny line builder that tracks block indentation."""

	def __init__(self) -> None:
		self._lines: list[str] = []
		self._depth = 0

	def line(self, text: str = "") -> None:
		self._lines.append(f"{_INDENT * self._depth}{text}" if text else "")

	def open(self, header: str) -> None:
		self.line(f"{header} {{")
		self._depth += 1

	def close(self) -> None:
		self._depth -= 1
		self.line("}")

	def text(self) -> str:
		return "\n".join(self._lines).rstrip("\n") + "\n"


def quote(value: str) -> str:
	"""Double-quote a value for nginx, escaping backslashes and quotes."""
	return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def upstream_name(rule: RoutingRule) -> str:
	return f"up_{rule.id}"


def _needs_upstream(rule: RoutingRule) -> bool:
	return rule.health_check is not None or (
		rule.load_balancing is not None and bool(rule.load_balancing.targets)
	)


def _zone_name(rule: RoutingRule) -> str:
	assert rule.rate_limit is not None
	return rule.rate_limit.zone or f"rl_{rule.id}"


def _resolve_tls(rule: RoutingRule, certificate: Certificate | None) -> _TlsFiles | None:
	if not rule.ssl_enabled:
		return None
	if certificate is not None:
		return _TlsFiles(
			cert_path=check_file_path(certificate.cert_path, "certificate.cert_path"),
			key_path=check_file_path(certificate.key_path, "certificate.key_path"),
			chain_path=check_file_path(certificate.chain_path, "certificate.chain_path") if certificate.chain_path else None,
		)
	if rule.ssl_cert_path and rule.ssl_key_path:
		return _TlsFiles(cert_path=rule.ssl_cert_path, key_path=rule.ssl_key_path)
	return None


# ---------------------------------------------------------------------------
# http-context blocks
# ---------------------------------------------------------------------------

def _render_http_context(conf: _Conf, rule: RoutingRule, options: RenderOptions) -> None:
	rl = rule.rate_limit
	if rl and rl.enabled:
		key = "$binary_remote_addr" if rl.per_ip else "$server_name"
		conf.line(f"limit_req_zone {key} zone={_zone_name(rule)}:10m rate={rl.requests_per_second}r/s;")
		conf.line()

	adv = rule.advanced
	if adv and adv.cache_enabled:
		conf.line(
			f"proxy_cache_path {options.cache_dir}/{rule.id} levels=1:2 "
			f"keys_zone=cache_{rule.id}:10m inactive=60m;"
		)
		conf.line()

	if _needs_upstream(rule):
		_render_upstream(conf, rule)
		conf.line()


def _render_upstream(conf: _Conf, rule: RoutingRule) -> None:
	lb = rule.load_balancing
	hc = rule.health_check
	conf.open(f"upstream {upstream_name(rule)}")
	if lb is not None:
		if lb.sticky:
			conf.line(f"hash $cookie_{lb.cookie_name} consistent;")
		elif lb.method == LoadBalancingMethod.LEAST_CONN:
			conf.line("least_conn;")
		elif lb.method == LoadBalancingMethod.IP_HASH:
			conf.line("ip_hash;")
		elif lb.method == LoadBalancingMethod.RANDOM:
			conf.line("random;")

	servers: list[tuple[str, int | None]]
	if lb is not None and lb.targets:
		servers = [(t.target, t.weight) for t in lb.targets]
	else:
		servers = [(rule.target, None)]

	for target, weight in servers:
		host, port = parse_target(target)
		params = []
		if weight is not None:
			params.append(f"weight={weight}")
		if hc is not None:
			params.append(f"max_fails={hc.retries}")
			params.append(f"fail_timeout={hc.interval}s")
		suffix = (" " + " ".join(params)) if params else ""
		conf.line(f"server {host}:{port}{suffix};")
	conf.close()


# ---------------------------------------------------------------------------
# server blocks
# ---------------------------------------------------------------------------

def _render_logs(conf: _Conf, rule: RoutingRule, options: RenderOptions) -> None:
	conf.line(f"access_log {options.log_dir}/{rule.id}_access.log;")
	conf.line(f"error_log {options.log_dir}/{rule.id}_error.log;")


def _render_challenge_location(conf: _Conf, options: RenderOptions) -> None:
	conf.open(f"location ^~ {ACME_CHALLENGE_PREFIX}")
	conf.line(f"root {options.acme_webroot};")
	conf.line("default_type text/plain;")
	conf.line("try_files $uri =404;")
	conf.close()


def _proxy_base(rule: RoutingRule) -> str:
	scheme = "https" if rule.protocol == ProxyProtocol.HTTPS else "http"
	if _needs_upstream(rule):
		return f"{scheme}://{upstream_name(rule)}"
	host, port = parse_target(rule.target)
	return f"{scheme}://{host}:{port}"


def _render_advanced(conf: _Conf, rule: RoutingRule) -> None:
	adv = rule.advanced
	if adv is None:
		return
	conf.line(f"proxy_connect_timeout {adv.proxy_connect_timeout}s;")
	conf.line(f"proxy_send_timeout {adv.proxy_send_timeout}s;")
	conf.line(f"proxy_read_timeout {adv.proxy_read_timeout}s;")
	if adv.proxy_buffer_size:
		conf.line(f"proxy_buffer_size {adv.proxy_buffer_size};")
	if adv.proxy_buffers:
		conf.line(f"proxy_buffers {adv.proxy_buffers};")
	if adv.proxy_busy_buffers_size:
		conf.line(f"proxy_busy_buffers_size {adv.proxy_busy_buffers_size};")
	if adv.client_max_body_size:
		conf.line(f"client_max_body_size {adv.client_max_body_size};")
	if adv.cache_enabled:
		conf.line(f"proxy_cache cache_{rule.id};")
		if adv.cache_duration:
			conf.line(f"proxy_cache_valid 200 {adv.cache_duration};")
	if adv.cors_enabled:
		conf.line(f"add_header Access-Control-Allow-Origin {quote(adv.cors_allow_origin or '*')} always;")
		if adv.cors_allow_methods:
			conf.line(f"add_header Access-Control-Allow-Methods {quote(adv.cors_allow_methods)} always;")
		if adv.cors_allow_headers:
			conf.line(f"add_header Access-Control-Allow-Headers {quote(adv.cors_allow_headers)} always;")
		if adv.cors_allow_credentials:
			conf.line('add_header Access-Control-Allow-Credentials "true" always;')


def _render_security_headers(conf: _Conf, rule: RoutingRule) -> None:
	sec = rule.security_headers
	if sec is None:
		return
	conf.line("# security headers")
	for field, header in _SECURITY_HEADER_FIELDS:
		value = getattr(sec, field)
		if value:
			conf.line(f"add_header {header} {quote(value)} always;")
	for name in sorted(sec.custom_headers):
		conf.line(f"add_header {name} {quote(sec.custom_headers[name])} always;")


def _render_waf(conf: _Conf, rule: RoutingRule, options: RenderOptions) -> None:
	waf = rule.waf
	if waf is None or not waf.enabled:
		return
	selected = set(waf.rulesets)
	body: list[str] = [f"SecRuleEngine {'DetectionOnly' if waf.mode == WafMode.DETECTION else 'On'}"]
	if selected - {WafRuleset.CUSTOM}:
		body.append(f"Include {options.crs_dir}/crs-setup.conf")
	if WafRuleset.CORE in selected:
		# The core set already loads every CRS rule file.
		body.append(f"Include {options.crs_dir}/rules/*.conf")
	else:
		for ruleset in _WAF_ORDER:
			if ruleset in selected and ruleset.value in CRS_RULESET_FILES:
				body.append(f"Include {options.crs_dir}/{CRS_RULESET_FILES[ruleset.value]}")
	if waf.custom_rules:
		body.extend(line.rstrip() for line in waf.custom_rules.strip().splitlines() if line.strip())

	conf.line("# web application firewall")
	conf.line("modsecurity on;")
	conf.line("modsecurity_rules '")
	for entry in body:
		conf.line(f"{_INDENT}{entry}")
	conf.line("';")


def _render_ip_access(conf: _Conf, rule: RoutingRule) -> None:
	acl = rule.ip_access
	if acl is None or not acl.enabled:
		return
	conf.line("# ip access control")
	for entry in acl.rules:
		line = f"{entry.action} {entry.ip.strip()};"
		if entry.comment:
			line += f"  # {entry.comment}"
		conf.line(line)
	conf.line(f"{acl.default_action} all;")


def _render_rate_limit(conf: _Conf, rule: RoutingRule) -> None:
	rl = rule.rate_limit
	if rl is None or not rl.enabled:
		return
	conf.line("# rate limiting")
	directive = f"limit_req zone={_zone_name(rule)} burst={rl.burst}"
	if rl.nodelay:
		directive += " nodelay"
	conf.line(directive + ";")
	if rl.log_level:
		conf.line(f"limit_req_log_level {rl.log_level};")
	if rl.response_code:
		conf.line(f"limit_req_status {rl.response_code};")


def _render_rewrites(conf: _Conf, rule: RoutingRule) -> None:
	if not rule.rewrite_rules:
		return
	conf.line("# url rewrites")
	for rw in rule.rewrite_rules:
		flag = f" {rw.flag}" if rw.flag else ""
		conf.line(f"rewrite {quote(rw.pattern)} {quote(rw.replacement)}{flag};")


def _render_custom(conf: _Conf, rule: RoutingRule) -> None:
	if not rule.custom_config or not rule.custom_config.strip():
		return
	conf.line("# custom configuration")
	for raw in rule.custom_config.strip("\n").splitlines():
		conf.line(raw.rstrip())


def _render_routing(conf: _Conf, rule: RoutingRule, options: RenderOptions) -> None:
	conf.open(f"location {rule.source_path or '/'}")
	conf.line(f"proxy_pass {_proxy_base(rule)};")
	conf.line("proxy_http_version 1.1;")
	conf.line("proxy_set_header Host $host;")
	conf.line("proxy_set_header X-Real-IP $remote_addr;")
	conf.line("proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;")
	conf.line("proxy_set_header X-Forwarded-Proto $scheme;")
	for name in sorted(rule.headers):
		conf.line(f"proxy_set_header {name} {quote(rule.headers[name])};")
	for name in sorted(rule.response_headers):
		conf.line(f"add_header {name} {quote(rule.response_headers[name])};")
	_render_advanced(conf, rule)

	# Fixed decoration order
	_render_security_headers(conf, rule)
	_render_waf(conf, rule, options)
	_render_ip_access(conf, rule)
	_render_rate_limit(conf, rule)
	_render_rewrites(conf, rule)
	_render_custom(conf, rule)
	conf.close()

	hc = rule.health_check
	if hc is not None:
		conf.line()
		conf.open(f"location = /_health_check_{rule.id}")
		conf.line("internal;")
		conf.line(f"proxy_pass {_proxy_base(rule)}{hc.path};")
		conf.line(f"proxy_connect_timeout {hc.timeout}s;")
		conf.line(f"proxy_read_timeout {hc.timeout}s;")
		conf.line("proxy_set_header Host $host;")
		conf.close()


def _render_http_server(conf: _Conf, rule: RoutingRule, server_name: str, tls: _TlsFiles | None, options: RenderOptions) -> None:
	conf.open("server")
	conf.line("listen 80;")
	conf.line(f"server_name {server_name};")
	_render_logs(conf, rule, options)
	conf.line()
	_render_challenge_location(conf, options)
	conf.line()
	if tls is not None:
		conf.open("location /")
		conf.line("return 301 https://$host$request_uri;")
		conf.close()
	else:
		_render_routing(conf, rule, options)
	conf.close()


def _render_https_server(conf: _Conf, rule: RoutingRule, server_name: str, tls: _TlsFiles, options: RenderOptions) -> None:
	conf.open("server")
	conf.line("listen 443 ssl;")
	conf.line(f"server_name {server_name};")
	_render_logs(conf, rule, options)
	conf.line()
	conf.line(f"ssl_certificate {tls.cert_path};")
	conf.line(f"ssl_certificate_key {tls.key_path};")
	if tls.chain_path:
		conf.line(f"ssl_trusted_certificate {tls.chain_path};")
	conf.line("ssl_session_timeout 1d;")
	conf.line("ssl_session_cache shared:kontainers_tls:10m;")
	conf.line(f"ssl_protocols {TLS_PROTOCOLS};")
	conf.line(f"ssl_ciphers '{TLS_CIPHERS}';")
	conf.line("ssl_prefer_server_ciphers on;")
	conf.line()
	_render_challenge_location(conf, options)
	conf.line()
	_render_routing(conf, rule, options)
	conf.close()


def render(rule: RoutingRule, certificate: Certificate | None = None, options: RenderOptions | None = None) -> str:
	"""Render ``rule`` into a self-contained nginx configuration file.

	Without a resolvable certificate (or with ``ssl_enabled`` off) a single
	port-80 server block is produced that serves ACME challenges and proxies
	everything else. With a certificate, port 80 only serves challenges and
	redirects, and a port-443 block carries the routing.

	Raises:
		ValidationError: if any value cannot be safely rendered
	"""
	options = options or RenderOptions()
	server_name = validate_rule(rule) or "_"
	tls = _resolve_tls(rule, certificate)

	conf = _Conf()
	title = f"{rule.name} ({server_name})" if rule.name else server_name
	conf.line(f"# kontainers rule {rule.id}: {title}")
	conf.line()
	_render_http_context(conf, rule, options)
	_render_http_server(conf, rule, server_name, tls, options)
	if tls is not None:
		conf.line()
		_render_https_server(conf, rule, server_name, tls, options)
	return conf.text()
