from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, cast

from fastapi.testclient import TestClient

from ratings_refresh.dependencies import (
    get_cache_manager,
    get_database,
    get_refresh_runner,
    get_runs_repository,
)
from ratings_refresh.models.catalog import CatalogItem
from ratings_refresh.models.refresh import RefreshOptions, RefreshSummary
from ratings_refresh.repositories.catalog_repository import CatalogRepository
from ratings_refresh.services.cancellation import CancellationToken
from ratings_refresh.services.progress import ProgressSink
from ratings_refresh.services.refresh_runner import RefreshRunner


class _BlockingRefreshService:
    def __init__(self) -> None:
        self.started = threading.Event()
        self.release = threading.Event()
        self.options: list[RefreshOptions] = []

    def run(
        self,
        options: RefreshOptions,
        *,
        progress: ProgressSink | None = None,
        cancellation: CancellationToken | None = None,
        run_id: str | None = None,
    ) -> RefreshSummary:
        _ = (progress, run_id)
        self.options.append(options)
        self.started.set()
        self.release.wait(timeout=5)
        if cancellation is not None:
            cancellation.raise_if_cancelled()
        return RefreshSummary()


def _install_blocking_runner(client: TestClient) -> tuple[RefreshRunner, _BlockingRefreshService]:
    service = _BlockingRefreshService()
    runner = RefreshRunner(
        refresh_service=cast(Any, service),
        runs_repository=get_runs_repository(),
        default_options=RefreshOptions(),
    )
    cast(Any, client.app).dependency_overrides[get_refresh_runner] = lambda: runner
    return runner, service


def test_health_echoes_request_id(client: TestClient) -> None:
    response = client.get("/health", headers={"X-Request-ID": "req-123"})

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert response.headers["X-Request-ID"] == "req-123"


def test_request_id_is_generated_or_trimmed(client: TestClient) -> None:
    generated = client.get("/health").headers["X-Request-ID"]
    trimmed = client.get("/health", headers={"X-Request-ID": "r" * 100}).headers["X-Request-ID"]

    assert len(generated) == 32
    assert trimmed == "r" * 64


def test_status_is_idle_without_runs(client: TestClient) -> None:
    response = client.get("/refresh/status")

    assert response.status_code == 200
    assert response.json()["state"] == "idle"
    assert response.json()["run_id"] is None


def test_refresh_with_empty_catalog_succeeds(client: TestClient) -> None:
    response = client.post("/refresh")

    assert response.status_code == 202
    get_refresh_runner().wait(timeout=5)

    runs = client.get("/refresh/runs").json()
    assert len(runs) == 1
    assert runs[0]["trigger"] == "api"
    assert runs[0]["status"] == "succeeded"
    assert runs[0]["summary"]["updated"] == 0


def test_refresh_download_failure_is_recorded(client: TestClient) -> None:
    CatalogRepository(get_database()).upsert_item(
        CatalogItem("m1", "Heat", "movie", "tt0113277", 7.9)
    )

    assert client.post("/refresh").status_code == 202
    get_refresh_runner().wait(timeout=10)

    [run] = client.get("/refresh/runs", params={"limit": 5}).json()
    assert run["status"] == "failed"
    assert run["error_category"] == "network"
    assert run["summary"]["total_items"] == 1


def test_refresh_conflict_override_and_cancel(client: TestClient) -> None:
    runner, service = _install_blocking_runner(client)

    response = client.post("/refresh", json={"minimum_votes": 250, "include_series": False})
    assert response.status_code == 202
    assert service.started.wait(timeout=5)
    assert service.options == [RefreshOptions(minimum_votes=250, include_series=False)]

    assert client.post("/refresh").status_code == 409
    assert client.delete("/refresh/cache").status_code == 409
    assert client.get("/refresh/status").json()["state"] == "running"

    cancel = client.post("/refresh/cancel")
    assert cancel.status_code == 200
    assert cancel.json()["state"] == "cancelling"

    service.release.set()
    runner.wait(timeout=5)
    assert client.post("/refresh/cancel").status_code == 409
    [run] = client.get("/refresh/runs").json()
    assert run["status"] == "cancelled"


def test_refresh_rejects_invalid_overrides(client: TestClient) -> None:
    assert client.post("/refresh", json={"minimum_votes": 0}).status_code == 422
    assert client.post("/refresh", json={"unknown": True}).status_code == 422


def test_delete_cache_reports_whether_anything_was_removed(client: TestClient) -> None:
    cache_path: Path = get_cache_manager().cache_path
    cache_path.parent.mkdir(parents=True, exist_ok=True)
    cache_path.write_text("cached", encoding="utf-8")

    assert client.delete("/refresh/cache").json() == {"deleted": True}
    assert client.delete("/refresh/cache").json() == {"deleted": False}
