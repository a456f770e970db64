from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from typing import Any

from ratings_refresh.config import AppSettings, clamp_minimum_votes
from ratings_refresh.models.catalog import ItemKind
from ratings_refresh.models.ratings import ParseStats


@dataclass(frozen=True)
class RefreshOptions:
    minimum_votes: int = 1
    include_movies: bool = True
    include_series: bool = True
    enable_item_debug_logging: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "minimum_votes", clamp_minimum_votes(self.minimum_votes))

    @classmethod
    def from_settings(cls, settings: AppSettings) -> RefreshOptions:
        return cls(
            minimum_votes=settings.minimum_votes,
            include_movies=settings.include_movies,
            include_series=settings.include_series,
            enable_item_debug_logging=settings.enable_item_debug_logging,
        )

    def with_overrides(self, **overrides: Any) -> RefreshOptions:
        updates = {key: value for key, value in overrides.items() if value is not None}
        if not updates:
            return self
        return replace(self, **updates)

    def item_kinds(self) -> tuple[ItemKind, ...]:
        kinds: list[ItemKind] = []
        if self.include_movies:
            kinds.append("movie")
        if self.include_series:
            kinds.extend(("series", "episode"))
        return tuple(kinds)


@dataclass(frozen=True)
class RefreshSummary:
    total_items: int = 0
    distinct_ids: int = 0
    updated: int = 0
    skipped_unchanged: int = 0
    skipped_below_minimum: int = 0
    skipped_missing_id: int = 0
    not_found: int = 0
    used_stale_cache: bool = False
    parse_stats: ParseStats | None = None

    @property
    def skipped_total(self) -> int:
        return self.skipped_unchanged + self.skipped_below_minimum + self.skipped_missing_id

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["skipped_total"] = self.skipped_total
        return payload
