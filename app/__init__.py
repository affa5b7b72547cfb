#!/usr/bin/env python3
#
# app/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Kontainers – nginx proxy configuration and certificate lifecycle engine."""

__version__ = "0.1.0"

from .main import create_app  # noqa: E402

__all__ = ["__version__", "create_app"]
