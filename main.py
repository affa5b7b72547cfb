#!/usr/bin/env python3
#
# main.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

# Kontainers - proxy configuration and certificate lifecycle engine
# Local development entry point
#

import os

import uvicorn
from app.utils.config import load_config

_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(request_id)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _uvicorn_log_config(level: str) -> dict:
	"""Uvicorn dict-config sharing the app's format until the factory takes over."""
	handler = {
		"formatter": "default",
		"class": "logging.StreamHandler",
		"stream": "ext://sys.stdout",
		"filters": ["request_id"],
	}
	return {
		"version": 1,
		"disable_existing_loggers": False,
		"filters": {"request_id": {"()": "app.utils.request_id.RequestIDFilter"}},
		"formatters": {"default": {"format": _LOG_FORMAT, "datefmt": _DATE_FORMAT}},
		"handlers": {"default": handler},
		"loggers": {
			name: {"handlers": ["default"], "level": level, "propagate": False}
			for name in ("uvicorn", "uvicorn.error", "uvicorn.access")
		},
	}


if __name__ == "__main__":
	cfg = load_config()
	uvicorn.run(
		"app:create_app",
		host=cfg.api_host,
		port=cfg.api_port,
		reload=os.environ.get("KONTAINERS_DEV_RELOAD", "").lower() in ("1", "true", "yes"),
		factory=True,
		log_config=_uvicorn_log_config(cfg.log_level.upper()),
	)
