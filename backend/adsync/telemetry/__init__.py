"""Telemetry (error tracking) helpers."""

from .sentry import capture_exception, capture_message, init_sentry

__all__ = ["capture_exception", "capture_message", "init_sentry"]
