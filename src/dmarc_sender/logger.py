"""Logging utilities for the DMARC report sender.

This module provides a centralized logging helper plus a small formatter for
``key=value`` event records. The actual logging setup (level, handlers,
format) is configured via ``logging.basicConfig()`` in the CLI entry point to
avoid duplicate handlers.

Example:
    Typical usage in a module::

        from dmarc_sender.logger import get_logger, log_event

        logger = get_logger("Transport")
        log_event(logger, "delivery_attempt", report_id=42, endpoint="mailto:a@b.example")
        # event=delivery_attempt report_id=42 endpoint=mailto:a@b.example
"""

from __future__ import annotations

import logging
from typing import Any


def get_logger(name: str = "DmarcSender") -> logging.Logger:
    """Retrieve a logger instance.

    Returns a standard library logger with the specified name. It does not
    configure handlers or formatters; that responsibility lies with the
    application entry point.

    Args:
        name: The logger name. Defaults to "DmarcSender".

    Returns:
        A ``logging.Logger`` instance bound to the given name.
    """
    return logging.getLogger(name)


def _format_value(value: Any) -> str:
    if value is None:
        return "-"
    text = str(value)
    if not text:
        return '""'
    if any(ch.isspace() for ch in text) or '"' in text or "=" in text:
        escaped = text.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    return text


def format_event(event: str, **fields: Any) -> str:
    """Render an event name and its fields as a ``key=value`` line.

    Fields keep their call order. Values containing whitespace, quotes or
    ``=`` are double-quoted; ``None`` renders as ``-``.
    """
    parts = [f"event={event}"]
    parts.extend(f"{key}={_format_value(value)}" for key, value in fields.items())
    return " ".join(parts)


def log_event(
    logger: logging.Logger | None,
    event: str,
    *,
    level: int = logging.INFO,
    **fields: Any,
) -> None:
    """Emit a structured ``key=value`` record.

    A ``None`` logger is accepted and ignored so callers never need to branch
    on whether observability is wired in.

    Args:
        logger: Target logger, or None to drop the record.
        event: Event name (e.g. ``delivery_attempt``, ``report_deleted``).
        level: Logging level for the record. Defaults to INFO.
        **fields: Event attributes, rendered in call order.
    """
    if logger is None:
        return
    if not logger.isEnabledFor(level):
        return
    logger.log(level, format_event(event, **fields))
