from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Literal, cast
from uuid import uuid4

from ratings_refresh.repositories.common import utc_now_iso
from ratings_refresh.repositories.database import Database

RunStatus = Literal["running", "succeeded", "failed", "cancelled"]


@dataclass(frozen=True)
class RefreshRunRecord:
    run_id: str
    trigger: str
    status: RunStatus
    started_at: str
    finished_at: str | None
    summary: dict[str, Any] | None
    error_category: str | None
    error_message: str | None


class RefreshRunsRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def start_run(self, *, trigger: str) -> str:
        run_id = f"run_{uuid4().hex}"
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO refresh_runs (id, trigger, status, started_at)
                VALUES (?, ?, 'running', ?)
                """,
                (run_id, trigger, utc_now_iso()),
            )
        return run_id

    def mark_succeeded(self, run_id: str, summary: dict[str, Any]) -> None:
        self._finish(run_id, status="succeeded", summary=summary)

    def mark_failed(
        self,
        run_id: str,
        *,
        error_category: str,
        error_message: str,
        summary: dict[str, Any] | None,
    ) -> None:
        status: RunStatus = "cancelled" if error_category == "cancelled" else "failed"
        self._finish(
            run_id,
            status=status,
            summary=summary,
            error_category=error_category,
            error_message=error_message,
        )

    def list_recent(self, *, limit: int = 20) -> list[RefreshRunRecord]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT id, trigger, status, started_at, finished_at,
                       summary_json, error_category, error_message
                FROM refresh_runs
                ORDER BY started_at DESC
                LIMIT ?
                """,
                (max(1, limit),),
            ).fetchall()

        return [
            RefreshRunRecord(
                run_id=str(row["id"]),
                trigger=str(row["trigger"]),
                status=cast(RunStatus, str(row["status"])),
                started_at=str(row["started_at"]),
                finished_at=row["finished_at"],
                summary=_load_summary(row["summary_json"]),
                error_category=row["error_category"],
                error_message=row["error_message"],
            )
            for row in rows
        ]

    def last_succeeded_at(self) -> str | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT finished_at
                FROM refresh_runs
                WHERE status = 'succeeded'
                ORDER BY finished_at DESC
                LIMIT 1
                """
            ).fetchone()
        if row is None:
            return None
        return cast(str | None, row["finished_at"])

    def _finish(
        self,
        run_id: str,
        *,
        status: RunStatus,
        summary: dict[str, Any] | None,
        error_category: str | None = None,
        error_message: str | None = None,
    ) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE refresh_runs
                SET status = ?, finished_at = ?, summary_json = ?,
                    error_category = ?, error_message = ?
                WHERE id = ?
                """,
                (
                    status,
                    utc_now_iso(),
                    json.dumps(summary, sort_keys=True) if summary is not None else None,
                    error_category,
                    error_message,
                    run_id,
                ),
            )


def _load_summary(raw: object) -> dict[str, Any] | None:
    if not isinstance(raw, str):
        return None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if isinstance(parsed, dict):
        return cast(dict[str, Any], parsed)
    return None
