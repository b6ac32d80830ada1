"""structlog setup for the engine and CLI.

Provider API keys travel both as headers and as ``?api-key=`` query
parameters, so every record passes through ``_redact_processor`` before it
is rendered. httpx logs full request URLs at INFO, which is why its logger
is held at WARNING.
"""

from __future__ import annotations

import logging
import os
import re
import sys

import structlog


_CONFIGURED = False

_REDACTED = "***REDACTED***"

_SECRET_KEYS = frozenset({"api_key", "apikey", "x-api-key", "authorization", "token"})

_URL_KEY_RE = re.compile(r"(api[-_]?key=)[^&\s\"']+", re.IGNORECASE)

# Chatty dependencies; their INFO lines repeat what the engine already logs
_QUIET_LOGGERS = ("httpx", "httpcore", "websockets")


def _redact_processor(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: structlog.types.EventDict,
) -> structlog.types.EventDict:
    for key, value in event_dict.items():
        if key.lower() in _SECRET_KEYS:
            event_dict[key] = _REDACTED
        elif isinstance(value, str) and "key=" in value.lower():
            event_dict[key] = _URL_KEY_RE.sub(r"\1" + _REDACTED, value)
    return event_dict


def configure_logging(level: str = "INFO", fmt: str = "console") -> None:
    """Route structlog and stdlib records through one stderr handler.

    ``fmt`` is ``"json"`` for one object per line, anything else for the
    coloured console renderer. Only the first call takes effect.
    """
    global _CONFIGURED
    if _CONFIGURED:
        return

    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    pre_chain: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _redact_processor,
    ]
    renderer: structlog.types.Processor
    if fmt == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(processor=renderer, foreign_pre_chain=pre_chain)
    )
    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel(log_level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    _CONFIGURED = True


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    if not _CONFIGURED:
        configure_logging(
            level=os.environ.get("BUILDERWATCH_LOG_LEVEL", "INFO"),
            fmt=os.environ.get("BUILDERWATCH_LOG_FORMAT", "console"),
        )
    return structlog.get_logger(name)
