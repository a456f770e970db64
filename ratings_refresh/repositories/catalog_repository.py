from __future__ import annotations

import sqlite3
from collections.abc import Sequence
from typing import cast

from ratings_refresh.models.catalog import ITEM_KINDS, CatalogItem, ItemKind
from ratings_refresh.repositories.common import utc_now_iso
from ratings_refresh.repositories.database import Database


class CatalogRepository:
    """SQLite-backed catalog adapter used by the refresh service."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def list_items(self, *, kinds: Sequence[ItemKind]) -> list[CatalogItem]:
        selected = [kind for kind in kinds if kind in ITEM_KINDS]
        if not selected:
            return []

        placeholders = ", ".join("?" for _ in selected)
        with self._db.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT id, name, kind, external_rating_id, community_rating, parent_id
                FROM catalog_items
                WHERE kind IN ({placeholders})
                  AND external_rating_id IS NOT NULL
                  AND is_virtual = 0
                ORDER BY parent_id, id
                """,
                tuple(selected),
            ).fetchall()
        return [_row_to_item(row) for row in rows]

    def persist_batch(self, items: Sequence[CatalogItem], parent_key: str | None) -> None:
        if not items:
            return
        updated_at = utc_now_iso()
        with self._db.connection() as conn:
            for item in items:
                cursor = conn.execute(
                    """
                    UPDATE catalog_items
                    SET community_rating = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (item.community_rating, updated_at, item.item_id),
                )
                if cursor.rowcount != 1:
                    raise LookupError(
                        f"catalog item {item.item_id!r} not found under parent {parent_key!r}"
                    )

    def upsert_item(self, item: CatalogItem, *, is_virtual: bool = False) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO catalog_items
                (id, name, kind, external_rating_id, community_rating, parent_id, is_virtual, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    kind = excluded.kind,
                    external_rating_id = excluded.external_rating_id,
                    community_rating = excluded.community_rating,
                    parent_id = excluded.parent_id,
                    is_virtual = excluded.is_virtual,
                    updated_at = excluded.updated_at
                """,
                (
                    item.item_id,
                    item.name,
                    item.kind,
                    item.external_rating_id,
                    item.community_rating,
                    item.parent_key,
                    1 if is_virtual else 0,
                    utc_now_iso(),
                ),
            )

    def get_item(self, item_id: str) -> CatalogItem | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT id, name, kind, external_rating_id, community_rating, parent_id
                FROM catalog_items
                WHERE id = ?
                """,
                (item_id,),
            ).fetchone()
        if row is None:
            return None
        return _row_to_item(row)


def _row_to_item(row: sqlite3.Row) -> CatalogItem:
    rating = row["community_rating"]
    return CatalogItem(
        item_id=str(row["id"]),
        name=str(row["name"]),
        kind=cast(ItemKind, str(row["kind"])),
        external_rating_id=_none_if_empty(row["external_rating_id"]),
        community_rating=float(rating) if rating is not None else None,
        parent_key=_none_if_empty(row["parent_id"]),
    )


def _none_if_empty(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value
    return None
