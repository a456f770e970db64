from __future__ import annotations

import logging
import sys
from pathlib import Path

import structlog
from structlog.typing import EventDict, Processor

from ratings_refresh.config import AppSettings

LOGGER_NAMESPACE = "ratings_refresh"
LOG_FILE_NAME = "ratings-refresh.log"

# Context keys bound while a refresh runs, and the names they are written under.
RUN_CONTEXT_FIELDS: tuple[tuple[str, str], ...] = (
    ("refresh_run_id", "run_id"),
    ("refresh_trigger", "trigger"),
)


def configure_application_logging(settings: AppSettings) -> Path:
    """
    Route every `ratings_refresh.*` logger to the console and a JSON-lines file.

    Records emitted inside a refresh carry its run id and trigger: the console
    prefixes the message with `[run_id/trigger]`, the file stores them as
    `run_id` and `trigger` fields.
    """
    settings.log_dir.mkdir(parents=True, exist_ok=True)
    log_file = settings.log_dir / LOG_FILE_NAME

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logger = logging.getLogger(LOGGER_NAMESPACE)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console_handler = logging.StreamHandler(stream=sys.stdout)
    console_handler.setLevel(resolve_log_level(settings.log_level))
    console_handler.setFormatter(
        _formatter(
            prefix_run_context,
            structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()),
        )
    )

    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(
        _formatter(
            rename_run_context,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(sort_keys=True),
        )
    )

    logger.addHandler(console_handler)
    logger.addHandler(file_handler)
    logger.info(
        "logging configured console_level=%s path=%s",
        settings.log_level.upper(),
        log_file,
    )
    return log_file


def resolve_log_level(raw_level: str) -> int:
    resolved = getattr(logging, raw_level.strip().upper(), None)
    if isinstance(resolved, int):
        return resolved
    return logging.INFO


def prefix_run_context(_logger: object, _method_name: str, event_dict: EventDict) -> EventDict:
    run_id = event_dict.pop("refresh_run_id", None)
    trigger = event_dict.pop("refresh_trigger", None)
    if run_id is None:
        return event_dict
    label = run_id if trigger is None else f"{run_id}/{trigger}"
    event_dict["event"] = f"[{label}] {event_dict.get('event', '')}"
    return event_dict


def rename_run_context(_logger: object, _method_name: str, event_dict: EventDict) -> EventDict:
    for context_key, field_name in RUN_CONTEXT_FIELDS:
        if context_key in event_dict:
            event_dict[field_name] = event_dict.pop(context_key)
    return event_dict


def _formatter(*renderers: Processor) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
        ],
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            *renderers,
        ],
    )
