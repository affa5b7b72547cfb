#!/usr/bin/env python3
#
# app/utils/config.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Configuration loading and app-level defaults."""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path

_log = logging.getLogger(__name__)


class ConfigValidationError(Exception):
	"""Raised when critical configuration is missing or invalid."""


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------
ACME_DIRECTORY_PROD = "https://acme-v02.api.letsencrypt.org/directory"
ACME_DIRECTORY_STAGING = "https://acme-staging-v02.api.letsencrypt.org/directory"

DEFAULT_NGINX_CONF = Path("/etc/nginx/nginx.conf")
DEFAULT_MANAGED_DIR = Path("/etc/nginx/kontainers.d")
DEFAULT_ACME_WEBROOT = Path("/var/www/acme")
DEFAULT_NGINX_LOG_DIR = Path("/var/log/nginx")
DEFAULT_CRS_DIR = Path("/etc/nginx/modsecurity/coreruleset")

ENV_PREFIX = "KONTAINERS_"


@dataclass(frozen=True)
class Config:
	"""Resolved runtime configuration derived from env and defaults."""
	base_dir: Path
	data_dir: Path
	db_path: Path
	certs_dir: Path
	accounts_dir: Path
	# nginx
	nginx_bin: str = "nginx"
	nginx_conf: Path = DEFAULT_NGINX_CONF
	managed_dir: Path = DEFAULT_MANAGED_DIR
	acme_webroot: Path = DEFAULT_ACME_WEBROOT
	nginx_log_dir: Path = DEFAULT_NGINX_LOG_DIR
	crs_dir: Path = DEFAULT_CRS_DIR
	# ACME
	acme_directory_url: str = ACME_DIRECTORY_PROD
	acme_email: str = ""
	acme_poll_attempts: int = 30
	acme_poll_delay: float = 2.0
	acme_step_retries: int = 3
	acme_self_check: bool = True
	# Renewal
	renewal_interval_seconds: float = 86400.0
	renewal_threshold_days: int = 30
	# Timeouts for blocking I/O (CA requests, nginx subprocesses)
	io_timeout: float = 30.0
	# API
	api_host: str = "127.0.0.1"
	api_port: int = 8000
	log_level: str = "INFO"

	@property
	def acme_staging(self) -> bool:
		return self.acme_directory_url == ACME_DIRECTORY_STAGING


def _parse_value(raw: str) -> str:
	"""Extract value, respecting quotes and stripping inline comments."""
	raw = raw.strip()
	if raw and raw[0] in ('"', "'"):
		quote = raw[0]
		end = raw.find(quote, 1)
		if end != -1:
			return raw[1:end]
	if " #" in raw:
		raw = raw.split(" #", 1)[0]
	return raw.strip()


def load_dotenv(dotenv_path: Path | None = None) -> None:
	"""Load simple KEY=VALUE pairs from settings.env.

	Behavior:
	- Ignores blank lines and comments (# ...)
	- Handles `export KEY=VALUE` syntax
	- Respects quoted values (doesn't strip # inside quotes)
	- Does not override already-set environment variables
	"""
	project_root = Path(__file__).resolve().parents[2]
	dotenv_path = dotenv_path or (project_root / "settings.env")
	if not dotenv_path.exists():
		return
	for raw_line in dotenv_path.read_text(encoding="utf-8").splitlines():
		line = raw_line.strip()
		if not line or line.startswith("#") or "=" not in line:
			continue
		key, value = line.split("=", 1)
		key = key.strip()
		if key.startswith("export "):
			key = key[7:].strip()
		if not key:
			continue
		os.environ.setdefault(key, _parse_value(value))


def _env(name: str, default: str) -> str:
	return os.getenv(ENV_PREFIX + name, default)


def _env_bool(name: str, default: bool) -> bool:
	raw = os.getenv(ENV_PREFIX + name)
	if raw is None:
		return default
	return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_number(name: str, default: float, *, cast=float, minimum: float | None = None):
	raw = os.getenv(ENV_PREFIX + name)
	if raw is None or not raw.strip():
		return cast(default)
	try:
		value = cast(raw.strip())
	except ValueError as exc:
		raise ConfigValidationError(f"{ENV_PREFIX}{name} must be a number, got {raw!r}") from exc
	if minimum is not None and value < minimum:
		raise ConfigValidationError(f"{ENV_PREFIX}{name} must be >= {minimum}, got {value}")
	return value


def load_config() -> Config:
	"""Load configuration from environment variables (optionally via settings.env)."""
	load_dotenv()
	project_root = Path(__file__).resolve().parents[2]

	data_dir = Path(_env("DATA_DIR", str(project_root / "data"))).resolve()
	db_path = (data_dir / "kontainers.db").resolve()
	certs_dir = Path(_env("CERTS_DIR", str(data_dir / "certs"))).resolve()
	accounts_dir = (data_dir / "acme-accounts").resolve()

	try:
		for d in (data_dir, certs_dir, accounts_dir):
			if d.exists() and not d.is_dir():
				raise ConfigValidationError(f"Path exists but is not a directory: {d}")
			d.mkdir(parents=True, exist_ok=True)
	except OSError as exc:
		raise ConfigValidationError(f"Cannot create data directories: {exc}") from exc

	allowed_levels = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}
	log_level = os.getenv("LOG_LEVEL", "INFO").upper()
	if log_level not in allowed_levels:
		log_level = "INFO"

	if _env_bool("ACME_STAGING", False):
		directory_url = ACME_DIRECTORY_STAGING
	else:
		directory_url = _env("ACME_DIRECTORY_URL", ACME_DIRECTORY_PROD)
	if not directory_url.startswith(("https://", "http://")):
		raise ConfigValidationError(f"Invalid ACME directory URL: {directory_url!r}")

	managed_dir = Path(_env("NGINX_MANAGED_DIR", str(DEFAULT_MANAGED_DIR)))
	if not managed_dir.is_absolute():
		raise ConfigValidationError(f"Managed nginx directory must be absolute: {managed_dir}")

	api_port = _env_number("API_PORT", 8000, cast=int, minimum=1)
	if api_port > 65535:
		raise ConfigValidationError(f"{ENV_PREFIX}API_PORT out of range: {api_port}")

	return Config(
		base_dir=project_root,
		data_dir=data_dir,
		db_path=db_path,
		certs_dir=certs_dir,
		accounts_dir=accounts_dir,
		nginx_bin=_env("NGINX_BIN", "nginx"),
		nginx_conf=Path(_env("NGINX_CONF", str(DEFAULT_NGINX_CONF))),
		managed_dir=managed_dir,
		acme_webroot=Path(_env("ACME_WEBROOT", str(DEFAULT_ACME_WEBROOT))),
		nginx_log_dir=Path(_env("NGINX_LOG_DIR", str(DEFAULT_NGINX_LOG_DIR))),
		crs_dir=Path(_env("CRS_DIR", str(DEFAULT_CRS_DIR))),
		acme_directory_url=directory_url,
		acme_email=_env("ACME_EMAIL", ""),
		acme_poll_attempts=_env_number("ACME_POLL_ATTEMPTS", 30, cast=int, minimum=1),
		acme_poll_delay=_env_number("ACME_POLL_DELAY", 2.0, minimum=0),
		acme_step_retries=_env_number("ACME_STEP_RETRIES", 3, cast=int, minimum=1),
		acme_self_check=_env_bool("ACME_SELF_CHECK", True),
		renewal_interval_seconds=_env_number("RENEWAL_INTERVAL", 86400.0, minimum=60),
		renewal_threshold_days=_env_number("RENEWAL_THRESHOLD_DAYS", 30, cast=int, minimum=0),
		io_timeout=_env_number("IO_TIMEOUT", 30.0, minimum=1),
		api_host=_env("API_HOST", "127.0.0.1"),
		api_port=api_port,
		log_level=log_level,
	)


# Global config singleton with thread-safe lazy initialization
_config: Config | None = None
_config_lock = threading.Lock()


def get_config() -> Config:
	"""Get the global config singleton (thread-safe)."""
	global _config
	if _config is None:
		with _config_lock:
			if _config is None:  # Double-checked locking
				_config = load_config()
	return _config


def reset_config() -> None:
	"""Reset the cached config. Intended for tests only."""
	global _config
	with _config_lock:
		_config = None
