from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from click.testing import CliRunner

from ratings_refresh.cli import main
from ratings_refresh.dependencies import get_cache_manager, get_database, reset_cached_dependencies
from ratings_refresh.models.catalog import CatalogItem
from ratings_refresh.repositories.catalog_repository import CatalogRepository


@pytest.fixture
def cli_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[Path]:
    data_dir = tmp_path / "cli-data"
    monkeypatch.setenv("RATINGS_REFRESH_DATA_DIR", str(data_dir))
    monkeypatch.setenv("RATINGS_REFRESH_DATASET_URL", (tmp_path / "missing.tsv.gz").as_uri())
    monkeypatch.setenv("RATINGS_REFRESH_TRANSIENT_RETRY_DELAY_SECONDS", "0")
    monkeypatch.setenv("RATINGS_REFRESH_TELEMETRY_SINK", "none")
    reset_cached_dependencies()
    yield data_dir
    reset_cached_dependencies()


def test_run_with_empty_catalog_prints_summary(cli_env: Path) -> None:
    result = CliRunner().invoke(main, ["run", "--minimum-votes", "50", "--no-series"])

    assert result.exit_code == 0, result.output
    assert '"updated": 0' in result.output


def test_runs_lists_recorded_runs(cli_env: Path) -> None:
    runner = CliRunner()
    assert runner.invoke(main, ["run"]).exit_code == 0

    result = runner.invoke(main, ["runs", "--limit", "5"])

    assert result.exit_code == 0
    assert "cli" in result.output
    assert "succeeded" in result.output


def test_runs_without_history(cli_env: Path) -> None:
    result = CliRunner().invoke(main, ["runs"])

    assert result.exit_code == 0
    assert "No refresh runs recorded" in result.output


def test_cache_commands(cli_env: Path) -> None:
    runner = CliRunner()

    missing = runner.invoke(main, ["cache-info"])
    assert "State: missing" in missing.output
    assert "Last successful refresh: never" in missing.output

    cache_path = get_cache_manager().cache_path
    cache_path.parent.mkdir(parents=True, exist_ok=True)
    cache_path.write_text("cached", encoding="utf-8")

    info = runner.invoke(main, ["cache-info"])
    assert "State: fresh" in info.output
    assert "Size:  6 bytes" in info.output

    deleted = runner.invoke(main, ["invalidate-cache"])
    assert "Ratings cache deleted" in deleted.output
    again = runner.invoke(main, ["invalidate-cache"])
    assert "No ratings cache to delete" in again.output


def test_cache_info_reports_last_successful_refresh(cli_env: Path) -> None:
    runner = CliRunner()
    assert runner.invoke(main, ["run"]).exit_code == 0

    info = runner.invoke(main, ["cache-info"])

    assert info.exit_code == 0
    assert "Last successful refresh: never" not in info.output
    assert "Last successful refresh: 20" in info.output


def test_show_item_prints_stored_rating(cli_env: Path) -> None:
    CatalogRepository(get_database()).upsert_item(
        CatalogItem("e1", "The Target", "episode", "tt0749451", 8.4, parent_key="s1")
    )
    runner = CliRunner()

    found = runner.invoke(main, ["show-item", "e1"])
    missing = runner.invoke(main, ["show-item", "nope"])

    assert found.exit_code == 0
    assert "IMDb id: tt0749451" in found.output
    assert "Rating:  8.4" in found.output
    assert "Parent:  s1" in found.output
    assert missing.exit_code == 1
