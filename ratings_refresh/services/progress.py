from __future__ import annotations

from typing import Protocol


class ProgressSink(Protocol):
    def report(self, percent: float) -> None:
        ...


class NoOpProgressSink:
    def report(self, percent: float) -> None:
        _ = percent


class ProgressTracker:
    """
    Forwards progress to a sink only when the integer percentage advances.

    Values are clamped to [0, 100] and never go backwards.
    """

    def __init__(self, sink: ProgressSink | None = None) -> None:
        self._sink: ProgressSink = sink if sink is not None else NoOpProgressSink()
        self._last_bucket = -1
        self._last_value = 0.0

    def report(self, percent: float) -> None:
        value = max(self._last_value, min(100.0, max(0.0, percent)))
        bucket = int(value)
        if bucket <= self._last_bucket:
            return
        self._last_bucket = bucket
        self._last_value = value
        self._sink.report(value)

    def report_fraction(self, start: float, span: float, done: int, total: int) -> None:
        if total <= 0:
            return
        self.report(start + span * done / total)

    def finish(self) -> None:
        self.report(100.0)
