from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

ItemKind = Literal["movie", "series", "episode"]
ITEM_KINDS: frozenset[str] = frozenset({"movie", "series", "episode"})


@dataclass
class CatalogItem:
    item_id: str
    name: str
    kind: ItemKind
    external_rating_id: str | None
    community_rating: float | None
    parent_key: str | None = None


@dataclass(frozen=True)
class PendingUpdate:
    item: CatalogItem
    parent_key: str | None
    old_rating: float | None
    new_rating: float
