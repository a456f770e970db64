from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Literal

from structlog.contextvars import bind_contextvars, reset_contextvars

from ratings_refresh.models.refresh import RefreshOptions, RefreshSummary
from ratings_refresh.repositories.common import utc_now_iso
from ratings_refresh.repositories.refresh_runs_repository import RefreshRunsRepository
from ratings_refresh.services.cancellation import CancellationToken
from ratings_refresh.services.errors import RatingsRefreshError, error_category
from ratings_refresh.services.ratings_cache import RatingsCacheManager
from ratings_refresh.services.ratings_refresh_service import RatingsRefreshService

LOGGER = logging.getLogger("ratings_refresh.runner")

RunnerState = Literal["idle", "running", "cancelling"]


class RefreshAlreadyRunningError(RuntimeError):
    pass


@dataclass(frozen=True)
class RefreshStatus:
    state: RunnerState
    run_id: str | None
    trigger: str | None
    started_at: str | None
    progress_percent: float


class _ActiveRun:
    def __init__(self, run_id: str, trigger: str) -> None:
        self.run_id = run_id
        self.trigger = trigger
        self.started_at = utc_now_iso()
        self.cancellation = CancellationToken()
        self.progress_percent = 0.0

    def report(self, percent: float) -> None:
        self.progress_percent = percent


class RefreshRunner:
    """Runs at most one refresh at a time and records each run's outcome."""

    def __init__(
        self,
        *,
        refresh_service: RatingsRefreshService,
        runs_repository: RefreshRunsRepository,
        default_options: RefreshOptions,
    ) -> None:
        self._refresh_service = refresh_service
        self._runs_repository = runs_repository
        self._default_options = default_options
        self._lock = threading.Lock()
        self._active: _ActiveRun | None = None
        self._thread: threading.Thread | None = None

    @property
    def default_options(self) -> RefreshOptions:
        return self._default_options

    def run_now(self, *, trigger: str, options: RefreshOptions | None = None) -> RefreshSummary:
        active = self._claim(trigger)
        return self._execute(active, options or self._default_options)

    def start_in_background(self, *, trigger: str, options: RefreshOptions | None = None) -> str:
        active = self._claim(trigger)
        resolved_options = options or self._default_options

        def _target() -> None:
            try:
                self._execute(active, resolved_options)
            except Exception:
                LOGGER.warning("background ratings refresh failed run_id=%s", active.run_id)

        thread = threading.Thread(target=_target, name="ratings-refresh-run")
        thread.daemon = True
        self._thread = thread
        thread.start()
        return active.run_id

    def cancel(self) -> bool:
        with self._lock:
            active = self._active
        if active is None:
            return False
        active.cancellation.cancel()
        LOGGER.info("ratings refresh cancellation requested run_id=%s", active.run_id)
        return True

    def invalidate_cache_if_idle(self, cache_manager: RatingsCacheManager) -> bool:
        """Delete the cached dataset unless a run is active; runs cannot start meanwhile."""
        with self._lock:
            if self._active is not None:
                raise RefreshAlreadyRunningError(
                    f"ratings refresh running run_id={self._active.run_id}, cache kept"
                )
            return cache_manager.invalidate()

    def wait(self, timeout: float | None = None) -> None:
        thread = self._thread
        if thread is not None:
            thread.join(timeout=timeout)

    def status(self) -> RefreshStatus:
        with self._lock:
            active = self._active
        if active is None:
            return RefreshStatus(
                state="idle",
                run_id=None,
                trigger=None,
                started_at=None,
                progress_percent=0.0,
            )
        return RefreshStatus(
            state="cancelling" if active.cancellation.cancelled else "running",
            run_id=active.run_id,
            trigger=active.trigger,
            started_at=active.started_at,
            progress_percent=active.progress_percent,
        )

    def _claim(self, trigger: str) -> _ActiveRun:
        with self._lock:
            if self._active is not None:
                raise RefreshAlreadyRunningError(
                    f"ratings refresh already running run_id={self._active.run_id}"
                )
            run_id = self._runs_repository.start_run(trigger=trigger)
            self._active = _ActiveRun(run_id, trigger)
            return self._active

    def _execute(self, active: _ActiveRun, options: RefreshOptions) -> RefreshSummary:
        context_tokens = bind_contextvars(refresh_trigger=active.trigger)
        try:
            summary = self._refresh_service.run(
                options,
                progress=active,
                cancellation=active.cancellation,
                run_id=active.run_id,
            )
        except Exception as exc:
            partial = exc.partial_summary if isinstance(exc, RatingsRefreshError) else None
            self._runs_repository.mark_failed(
                active.run_id,
                error_category=error_category(exc),
                error_message=str(exc),
                summary=partial.to_dict() if partial is not None else None,
            )
            LOGGER.error(
                "ratings refresh failed run_id=%s category=%s error=%s",
                active.run_id,
                error_category(exc),
                exc,
            )
            raise
        else:
            self._runs_repository.mark_succeeded(active.run_id, summary.to_dict())
            return summary
        finally:
            reset_contextvars(**context_tokens)
            with self._lock:
                self._active = None
