"""
experiment_sdk.tier0_core.logging
──────────────────────────────────
Structured engine events (``assignment.created``, ``results.computed`` …)
with levels, contextvars injection and scrubbing of sensitive targeting
attributes before anything reaches a sink.

Minimal stack: structlog (stdout JSON or console)
Configure via: EXPERIMENTS_LOG_LEVEL, EXPERIMENTS_LOG_FORMAT=json|console
"""
from __future__ import annotations

import logging
import sys
from collections.abc import Mapping
from typing import Any, TextIO

import structlog

from experiment_sdk.tier0_core.config import get_config

_SDK_LOGGER = "experiment_sdk"


# ── Scrubbing ─────────────────────────────────────────────────────────────────

# Targeting contexts are caller-supplied and may carry personal data.
_REDACT_KEYS = frozenset({
    "email", "phone", "ip", "ip_address", "password", "token",
    "api_key", "access_token", "authorization", "credit_card",
})

_REDACTED = "[REDACTED]"


def _scrub(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {
            k: _REDACTED if str(k).lower() in _REDACT_KEYS else _scrub(v)
            for k, v in value.items()
        }
    return value


def _redact_processor(logger: Any, method: str, event_dict: dict) -> dict:
    """Replace sensitive keys at any depth, e.g. inside user_context."""
    return _scrub(event_dict)


# ── Configuration ─────────────────────────────────────────────────────────────

def _build_renderer(fmt: str) -> Any:
    if fmt == "console":
        return structlog.dev.ConsoleRenderer(colors=False)
    return structlog.processors.JSONRenderer(sort_keys=True)


def configure_logging(
    level: str | None = None,
    fmt: str | None = None,
    stream: TextIO | None = None,
) -> None:
    """
    (Re)configure engine logging. Defaults come from config; host
    applications may call this explicitly to pick a level, format or stream.
    Only the ``experiment_sdk`` stdlib logger gets a handler, so the host's
    root logging setup is left alone.
    """
    config = get_config()
    numeric_level = getattr(logging, (level or config.log_level).upper(), logging.INFO)

    pre_chain: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        _redact_processor,
    ]

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=pre_chain,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            _build_renderer(fmt or config.log_format),
        ],
    ))

    sdk_logger = logging.getLogger(_SDK_LOGGER)
    for existing in list(sdk_logger.handlers):
        sdk_logger.removeHandler(existing)
    sdk_logger.addHandler(handler)
    sdk_logger.setLevel(numeric_level)
    sdk_logger.propagate = False


# ── Public API ────────────────────────────────────────────────────────────────

_configured = False


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """
    Return a structured logger bound to the given name. Logging is
    configured from config on the first call.

    Usage:
        log = get_logger(__name__)
        log.info("assignment.created", experiment_id="exp_1", variant_id="var_a")
    """
    global _configured
    if not _configured:
        configure_logging()
        _configured = True
    return structlog.get_logger(name or _SDK_LOGGER)


def bind_context(**kwargs: Any) -> None:
    """
    Bind key-value pairs to the current async/thread context, e.g. a
    request id set by the host application's middleware.
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


__all__ = ["configure_logging", "get_logger", "bind_context", "clear_context"]
