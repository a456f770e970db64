from __future__ import annotations

from dataclasses import asdict
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query

from ratings_refresh.dependencies import (
    get_cache_manager,
    get_refresh_runner,
    get_runs_repository,
)
from ratings_refresh.models.refresh_contracts import (
    CacheInvalidateResponse,
    RefreshRequest,
    RefreshRunResponse,
    RefreshStatusResponse,
)
from ratings_refresh.repositories.refresh_runs_repository import RefreshRunsRepository
from ratings_refresh.services.ratings_cache import RatingsCacheManager
from ratings_refresh.services.refresh_runner import RefreshAlreadyRunningError, RefreshRunner

router = APIRouter()


def _status_response(runner: RefreshRunner) -> RefreshStatusResponse:
    return RefreshStatusResponse.model_validate(asdict(runner.status()))


@router.post(
    "/refresh",
    response_model=RefreshStatusResponse,
    status_code=202,
    tags=["refresh"],
    operation_id="start_refresh",
)
def start_refresh(
    runner: Annotated[RefreshRunner, Depends(get_refresh_runner)],
    request: RefreshRequest | None = None,
) -> RefreshStatusResponse:
    options = runner.default_options
    if request is not None:
        options = options.with_overrides(**request.model_dump())
    try:
        runner.start_in_background(trigger="api", options=options)
    except RefreshAlreadyRunningError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return _status_response(runner)


@router.post(
    "/refresh/cancel",
    response_model=RefreshStatusResponse,
    tags=["refresh"],
    operation_id="cancel_refresh",
)
def cancel_refresh(
    runner: Annotated[RefreshRunner, Depends(get_refresh_runner)],
) -> RefreshStatusResponse:
    if not runner.cancel():
        raise HTTPException(status_code=409, detail="No ratings refresh is running.")
    return _status_response(runner)


@router.get(
    "/refresh/status",
    response_model=RefreshStatusResponse,
    tags=["refresh"],
    operation_id="refresh_status",
)
def refresh_status(
    runner: Annotated[RefreshRunner, Depends(get_refresh_runner)],
) -> RefreshStatusResponse:
    return _status_response(runner)


@router.get(
    "/refresh/runs",
    response_model=list[RefreshRunResponse],
    tags=["refresh"],
    operation_id="list_refresh_runs",
)
def list_refresh_runs(
    runs_repository: Annotated[RefreshRunsRepository, Depends(get_runs_repository)],
    limit: Annotated[int, Query(ge=1, le=200)] = 20,
) -> list[RefreshRunResponse]:
    return [
        RefreshRunResponse.model_validate(asdict(record))
        for record in runs_repository.list_recent(limit=limit)
    ]


@router.delete(
    "/refresh/cache",
    response_model=CacheInvalidateResponse,
    tags=["refresh"],
    operation_id="invalidate_ratings_cache",
)
def invalidate_ratings_cache(
    cache_manager: Annotated[RatingsCacheManager, Depends(get_cache_manager)],
    runner: Annotated[RefreshRunner, Depends(get_refresh_runner)],
) -> CacheInvalidateResponse:
    try:
        deleted = runner.invalidate_cache_if_idle(cache_manager)
    except RefreshAlreadyRunningError as exc:
        raise HTTPException(
            status_code=409,
            detail="Cannot invalidate the ratings cache while a refresh is running.",
        ) from exc
    return CacheInvalidateResponse(deleted=deleted)
