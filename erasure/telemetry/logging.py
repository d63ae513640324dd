"""structlog setup for the erasure worker and CLI.

Production renders one JSON object per line; development uses the console
renderer with rich tracebacks. Saga steps bind ``instance_id`` and
``fiscal_code`` through contextvars so every line an activity writes can be
tied back to its saga. Every fiscal code found in an entry is masked before
rendering, including the ones embedded in instance ids, request ids and
backup folders; email addresses are masked by key.

Example production line::

    {"event": "saga.grace_period_started", "level": "info",
     "logger": "erasure.saga.orchestrator",
     "instance_id": "user-data-delete-RSSM***********U",
     "fiscal_code": "RSSM***********U",
     "wake_at": "2026-02-23T10:30:45.123456+00:00",
     "timestamp": "2026-02-17T10:30:45.123456Z"}
"""

from __future__ import annotations

import logging
import re
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from erasure.schemas import FISCAL_CODE_PATTERN

_ADDRESS_KEYS = frozenset({"to_address"})
_FISCAL_CODE_RE = re.compile(FISCAL_CODE_PATTERN.removeprefix("^").removesuffix("$"))


def _mask(value: str) -> str:
    if len(value) <= 5:
        return value
    return value[:4] + "*" * (len(value) - 5) + value[-1]


def _scrub(value: Any) -> Any:
    if isinstance(value, str):
        return _FISCAL_CODE_RE.sub(lambda match: _mask(match.group()), value)
    if isinstance(value, dict):
        return {key: _scrub(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return type(value)(_scrub(item) for item in value)
    return value


def mask_personal_data(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask fiscal codes and email addresses carried in log entries.

    Only the first four and the last character survive, which is enough to
    correlate entries without writing the identifier to the log sink.
    Fiscal codes are matched anywhere in string values, nested dicts and
    lists included, so ``user-data-delete-<fiscalCode>`` is masked too.
    """
    for key, value in event_dict.items():
        if key in _ADDRESS_KEYS and isinstance(value, str):
            event_dict[key] = _mask(value)
        else:
            event_dict[key] = _scrub(value)
    return event_dict


def _renderers(json_logs: bool) -> list[Processor]:
    if json_logs:
        return [
            structlog.processors.format_exc_info,
            mask_personal_data,
            structlog.processors.JSONRenderer(),
        ]
    return [
        mask_personal_data,
        structlog.dev.ConsoleRenderer(
            colors=sys.stdout.isatty(),
            exception_formatter=structlog.dev.RichTracebackFormatter(),
        ),
    ]


def configure_logging(*, json_logs: bool = False, log_level: str = "INFO") -> None:
    """Route structlog through stdlib logging on stdout.

    Args:
        json_logs: JSON lines instead of the console renderer
        log_level: Name of the minimum stdlib level
    """
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level.upper())

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        *_renderers(json_logs),
    ]
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def bind_saga_context(instance_id: str, fiscal_code: str) -> None:
    """Attach the saga being stepped to every following log line."""
    structlog.contextvars.bind_contextvars(instance_id=instance_id, fiscal_code=fiscal_code)


def bind_activity_context(activity_name: str) -> None:
    structlog.contextvars.bind_contextvars(activity=activity_name)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()
