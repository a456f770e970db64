from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from ratings_refresh.config import MIN_VOTES_CEILING, MIN_VOTES_FLOOR


class RefreshRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    minimum_votes: int | None = Field(default=None, ge=MIN_VOTES_FLOOR, le=MIN_VOTES_CEILING)
    include_movies: bool | None = None
    include_series: bool | None = None
    enable_item_debug_logging: bool | None = None


class RefreshStatusResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    state: Literal["idle", "running", "cancelling"]
    progress_percent: float
    run_id: str | None = None
    trigger: str | None = None
    started_at: str | None = None


class RefreshRunResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    run_id: str
    trigger: str
    status: Literal["running", "succeeded", "failed", "cancelled"]
    started_at: str
    finished_at: str | None = None
    summary: dict[str, Any] | None = None
    error_category: str | None = None
    error_message: str | None = None


class CacheInvalidateResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    deleted: bool
