#!/usr/bin/env python3
#
# app/proxy/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Nginx configuration rendering and safe apply."""

from .renderer import RenderOptions, render
from .validation import validate_rule
from .writer import ApplyResult, ConfigWriter, WriterState

__all__ = [
	"ApplyResult",
	"ConfigWriter",
	"RenderOptions",
	"WriterState",
	"render",
	"validate_rule",
]
