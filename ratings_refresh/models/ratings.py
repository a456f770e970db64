from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class RatingRecord:
    rating: float
    vote_count: int


@dataclass(frozen=True)
class ParseStats:
    total_rows: int
    valid_rows: int
    parse_errors: int
    matched_rows: int

    @property
    def error_ratio(self) -> float:
        if self.total_rows == 0:
            return 0.0
        return self.parse_errors / self.total_rows


@dataclass(frozen=True)
class ParseResult:
    table: Mapping[str, RatingRecord]
    stats: ParseStats
