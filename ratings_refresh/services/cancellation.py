from __future__ import annotations

import threading

from ratings_refresh.services.errors import RefreshCancelledError


class CancellationToken:
    """Cooperative cancellation flag shared between a run and whoever may abort it."""

    def __init__(self) -> None:
        self._event = threading.Event()

    @classmethod
    def none(cls) -> CancellationToken:
        return cls()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RefreshCancelledError("ratings refresh was cancelled")

    def wait(self, seconds: float) -> None:
        """Sleep for `seconds`, waking early and raising if cancelled meanwhile."""
        if self._event.wait(max(0.0, seconds)):
            raise RefreshCancelledError("ratings refresh was cancelled")
