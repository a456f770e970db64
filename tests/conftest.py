from __future__ import annotations

import gzip
import logging
from collections.abc import Callable, Iterator, Sequence
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from ratings_refresh.dependencies import reset_cached_dependencies
from ratings_refresh.main import create_app

HEADER = "tconst\taverageRating\tnumVotes"

RatingsFileFactory = Callable[..., Path]


def _render_ratings(
    rows: Sequence[tuple[str, float, int] | str],
    *,
    newline: str = "\n",
    final_newline: bool = True,
) -> str:
    lines = [HEADER]
    for row in rows:
        if isinstance(row, str):
            lines.append(row)
        else:
            tconst, rating, votes = row
            lines.append(f"{tconst}\t{rating}\t{votes}")
    body = newline.join(lines)
    return body + newline if final_newline else body


@pytest.fixture(autouse=True)
def restore_application_logging() -> Iterator[None]:
    logger = logging.getLogger("ratings_refresh")
    handlers, level, propagate = list(logger.handlers), logger.level, logger.propagate
    yield
    for handler in logger.handlers:
        if handler not in handlers:
            handler.close()
    logger.handlers = handlers
    logger.setLevel(level)
    logger.propagate = propagate


@pytest.fixture
def ratings_file(tmp_path: Path) -> RatingsFileFactory:
    counter = {"value": 0}

    def _write(
        rows: Sequence[tuple[str, float, int] | str],
        *,
        name: str | None = None,
        compress: bool = False,
        newline: str = "\n",
        final_newline: bool = True,
    ) -> Path:
        counter["value"] += 1
        file_name = name or f"ratings-{counter['value']}.tsv"
        content = _render_ratings(rows, newline=newline, final_newline=final_newline).encode("utf-8")
        if compress:
            path = tmp_path / f"{file_name}.gz"
            path.write_bytes(gzip.compress(content))
        else:
            path = tmp_path / file_name
            path.write_bytes(content)
        return path

    return _write


@pytest.fixture
def client(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[TestClient]:
    data_dir = tmp_path / "runtime-data"
    data_dir.mkdir(parents=True, exist_ok=True)

    monkeypatch.setenv("RATINGS_REFRESH_DATA_DIR", str(data_dir))
    monkeypatch.setenv("RATINGS_REFRESH_SCHEDULER_ENABLED", "0")
    monkeypatch.setenv("RATINGS_REFRESH_DATASET_URL", (tmp_path / "missing.tsv.gz").as_uri())
    monkeypatch.setenv("RATINGS_REFRESH_TRANSIENT_RETRY_DELAY_SECONDS", "0")
    reset_cached_dependencies()

    app = create_app()
    with TestClient(app) as test_client:
        yield test_client

    reset_cached_dependencies()
