from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Literal, Protocol
from urllib.parse import urlsplit, urlunsplit

import structlog
from structlog.contextvars import get_contextvars

from ratings_refresh.logging_config import RUN_CONTEXT_FIELDS

TelemetryValue = bool | int | float | str | None

# Catalog titles belong to the user's library and are never exported.
_PRIVATE_KEYS = frozenset({"item_name", "parent_name"})
_URL_KEYS = frozenset({"url", "dataset_url"})
_MAX_STRING_LENGTH = 160


class TelemetrySink(Protocol):
    def emit(self, *, event_name: str, attributes: Mapping[str, TelemetryValue]) -> None:
        ...


class NoOpTelemetrySink:
    def emit(self, *, event_name: str, attributes: Mapping[str, TelemetryValue]) -> None:
        _ = (event_name, attributes)


class StructuredLogTelemetrySink:
    def __init__(self) -> None:
        self._logger = structlog.get_logger("ratings_refresh.telemetry")

    def emit(self, *, event_name: str, attributes: Mapping[str, TelemetryValue]) -> None:
        self._logger.info("telemetry", telemetry_event=event_name, **dict(attributes))


@dataclass(frozen=True)
class TelemetryClient:
    """
    Emits flat telemetry events.

    Events emitted while a refresh is running are tagged with its `run_id`
    and `trigger` unless the caller passes them explicitly.
    """

    enabled: bool
    sink: TelemetrySink

    @classmethod
    def disabled(cls) -> TelemetryClient:
        return cls(enabled=False, sink=NoOpTelemetrySink())

    def emit(self, event_name: str, **attributes: Any) -> None:
        if not self.enabled:
            return
        merged = _run_context()
        merged.update(attributes)
        self.sink.emit(event_name=event_name, attributes=_sanitize_attributes(merged))


def build_telemetry_client(*, enabled: bool, sink: Literal["none", "log"]) -> TelemetryClient:
    if not enabled or sink == "none":
        return TelemetryClient.disabled()
    return TelemetryClient(enabled=True, sink=StructuredLogTelemetrySink())


def _run_context() -> dict[str, Any]:
    context = get_contextvars()
    return {
        field_name: context[context_key]
        for context_key, field_name in RUN_CONTEXT_FIELDS
        if context.get(context_key) is not None
    }


def _sanitize_attributes(attributes: Mapping[str, Any]) -> dict[str, TelemetryValue]:
    sanitized: dict[str, TelemetryValue] = {}
    for key, value in attributes.items():
        if key in _PRIVATE_KEYS:
            sanitized[key] = "[redacted]"
        elif key in _URL_KEYS and isinstance(value, str):
            sanitized[key] = _public_url(value)
        else:
            sanitized[key] = _compact(value)
    return sanitized


def _public_url(url: str) -> str:
    """Drop credentials, query and fragment from a dataset URL."""
    parts = urlsplit(url)
    host = parts.hostname or ""
    if parts.port is not None:
        host = f"{host}:{parts.port}"
    return urlunsplit((parts.scheme, host, parts.path, "", ""))


def _compact(value: Any) -> TelemetryValue:
    if value is None or isinstance(value, bool | int | float):
        return value
    if isinstance(value, str):
        compact = " ".join(value.split())
        if len(compact) <= _MAX_STRING_LENGTH:
            return compact
        return f"{compact[:_MAX_STRING_LENGTH]}..."
    return type(value).__name__
