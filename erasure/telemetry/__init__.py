"""Telemetry package for observability.

This package contains:
- Structured logging configuration and context binding helpers
"""

from __future__ import annotations
