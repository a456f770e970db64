from __future__ import annotations

import fcntl
import logging
import os
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta, tzinfo
from pathlib import Path
from typing import TextIO
from uuid import uuid4
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from structlog.contextvars import bind_contextvars, reset_contextvars

from ratings_refresh.services.refresh_runner import RefreshAlreadyRunningError, RefreshRunner
from ratings_refresh.telemetry import TelemetryClient

LOGGER = logging.getLogger("ratings_refresh.scheduler")


def next_daily_run(
    now: datetime,
    *,
    hour: int,
    minute: int,
    timezone: str,
) -> datetime:
    """Next occurrence of `hour:minute` in `timezone` strictly after `now`, as UTC."""
    zone = _resolve_zone(timezone)
    local_now = now.astimezone(zone)
    candidate = local_now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate <= local_now:
        candidate = (candidate + timedelta(days=1)).replace(hour=hour, minute=minute)
    return candidate.astimezone(UTC)


def _resolve_zone(name: str) -> tzinfo:
    if name.strip().upper() == "UTC":
        return UTC
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        LOGGER.warning("unknown scheduler timezone=%s; falling back to UTC", name)
        return UTC


class SchedulerLock:
    """Advisory `flock` on a file under the data dir, one scheduler per data dir."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._handle: TextIO | None = None

    @property
    def held(self) -> bool:
        return self._handle is not None

    def acquire(self) -> bool:
        if self._handle is not None:
            return True
        self.path.parent.mkdir(parents=True, exist_ok=True)
        handle = self.path.open("a+", encoding="utf-8")
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            handle.close()
            return False
        except OSError:
            handle.close()
            raise
        handle.seek(0)
        handle.truncate()
        handle.write(f"{os.getpid()}\n")
        handle.flush()
        self._handle = handle
        return True

    def release(self) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()


class SchedulerService:
    """Fires the daily ratings refresh from a background thread."""

    def __init__(
        self,
        runner: RefreshRunner,
        *,
        daily_hour: int = 3,
        daily_minute: int = 0,
        timezone: str = "UTC",
        poll_interval_seconds: int = 30,
        telemetry: TelemetryClient | None = None,
        lock_path: Path | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._runner = runner
        self._daily_hour = daily_hour
        self._daily_minute = daily_minute
        self._timezone = timezone
        self._poll_interval_seconds = max(1, poll_interval_seconds)
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._clock = clock if clock is not None else (lambda: datetime.now(UTC))
        self._next_run_at = self._compute_next_run()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock = SchedulerLock(lock_path) if lock_path is not None else None

    @property
    def next_run_at(self) -> datetime:
        return self._next_run_at

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return

        if self._lock is not None and not self._lock.acquire():
            LOGGER.info("scheduler not started; lock held by another process path=%s", self._lock.path)
            return

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="ratings-refresh-scheduler")
        self._thread.daemon = True
        self._thread.start()
        LOGGER.info("scheduler started next_run_at=%s", self._next_run_at.isoformat())

    def stop(self) -> None:
        self._stop_event.set()
        self._runner.cancel()
        if self._thread is not None:
            self._thread.join(timeout=3)
            self._thread = None
        if self._lock is not None:
            self._lock.release()

    def trigger_now(self) -> str:
        return self._runner.start_in_background(trigger="manual")

    def run_due(self) -> bool:
        """Run the daily refresh if its time has come; returns whether a run was attempted."""
        now = self._clock()
        if now < self._next_run_at:
            return False
        self._next_run_at = self._compute_next_run()
        self._run_scheduler_tick()
        return True

    def _compute_next_run(self) -> datetime:
        return next_daily_run(
            self._clock(),
            hour=self._daily_hour,
            minute=self._daily_minute,
            timezone=self._timezone,
        )

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            self.run_due()
            self._stop_event.wait(self._poll_interval_seconds)

    def _run_scheduler_tick(self) -> None:
        tick_id = uuid4().hex
        tick_tokens = bind_contextvars(scheduler_tick_id=tick_id)
        started_at = time.perf_counter()
        self._telemetry.emit("scheduler.tick.start", tick_id=tick_id)
        try:
            self._runner.run_now(trigger="scheduled")
        except RefreshAlreadyRunningError:
            LOGGER.info("scheduled ratings refresh skipped; a run is already in progress")
            self._telemetry.emit(
                "scheduler.tick.finish",
                tick_id=tick_id,
                duration_ms=int((time.perf_counter() - started_at) * 1000),
                outcome="skipped",
            )
        except Exception as exc:
            self._telemetry.emit(
                "scheduler.tick.error",
                tick_id=tick_id,
                duration_ms=int((time.perf_counter() - started_at) * 1000),
                error_type=type(exc).__name__,
            )
            LOGGER.warning("scheduled ratings refresh failed", exc_info=True)
        else:
            self._telemetry.emit(
                "scheduler.tick.finish",
                tick_id=tick_id,
                duration_ms=int((time.perf_counter() - started_at) * 1000),
                outcome="ok",
            )
        finally:
            reset_contextvars(**tick_tokens)
