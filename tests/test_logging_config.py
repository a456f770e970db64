from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest
from structlog.contextvars import bound_contextvars

from ratings_refresh.config import load_settings
from ratings_refresh.logging_config import (
    configure_application_logging,
    prefix_run_context,
    resolve_log_level,
)


def _flush() -> None:
    for handler in logging.getLogger("ratings_refresh").handlers:
        handler.flush()


def test_run_context_reaches_console_and_file(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    monkeypatch.setenv("RATINGS_REFRESH_DATA_DIR", str(tmp_path))
    log_file = configure_application_logging(load_settings())

    with bound_contextvars(refresh_run_id="run_abc", refresh_trigger="cli"):
        logging.getLogger("ratings_refresh.refresh").info("persisted chunk size=%s", 3)
    logging.getLogger("ratings_refresh.cache").info("ratings cache invalidated")
    _flush()

    console = capsys.readouterr().out
    assert "[run_abc/cli] persisted chunk size=3" in console
    assert "[run_abc" not in console.split("persisted chunk size=3", 1)[1]

    entries = [json.loads(line) for line in log_file.read_text(encoding="utf-8").splitlines()]
    chunk = next(entry for entry in entries if entry["event"] == "persisted chunk size=3")
    assert chunk["run_id"] == "run_abc"
    assert chunk["trigger"] == "cli"
    assert chunk["logger"] == "ratings_refresh.refresh"
    assert "refresh_run_id" not in chunk
    invalidated = next(entry for entry in entries if entry["event"] == "ratings cache invalidated")
    assert "run_id" not in invalidated


def test_reconfiguring_replaces_handlers(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RATINGS_REFRESH_DATA_DIR", str(tmp_path))
    settings = load_settings()

    configure_application_logging(settings)
    configure_application_logging(settings)

    assert len(logging.getLogger("ratings_refresh").handlers) == 2


def test_prefix_without_trigger_uses_run_id_only() -> None:
    event = prefix_run_context(None, "info", {"event": "scan done", "refresh_run_id": "run_1"})

    assert event == {"event": "[run_1] scan done"}


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("debug", logging.DEBUG), (" WARNING ", logging.WARNING), ("chatty", logging.INFO)],
)
def test_resolve_log_level(raw: str, expected: int) -> None:
    assert resolve_log_level(raw) == expected
