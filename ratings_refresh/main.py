from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from structlog.contextvars import bind_contextvars, reset_contextvars

from ratings_refresh.api.routes import router
from ratings_refresh.dependencies import get_refresh_runner, get_settings, get_telemetry
from ratings_refresh.logging_config import configure_application_logging
from ratings_refresh.services.scheduler_service import SchedulerService

REQUEST_ID_HEADER = "X-Request-ID"
_MAX_REQUEST_ID_LENGTH = 64


def health_check() -> dict[str, str]:
    return {"status": "ok"}


def resolve_request_id(raw: str | None) -> str:
    candidate = (raw or "").strip()[:_MAX_REQUEST_ID_LENGTH]
    return candidate or uuid4().hex


async def request_context_middleware(
    request: Request,
    call_next: Callable[[Request], Awaitable[Response]],
) -> Response:
    """Tag logs with the request id and emit one `http.request` event per request."""
    request_id = resolve_request_id(request.headers.get(REQUEST_ID_HEADER))
    context_tokens = bind_contextvars(http_request_id=request_id)
    started_at = perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
    finally:
        get_telemetry().emit(
            "http.request",
            request_id=request_id,
            route=f"{request.method} {request.url.path}",
            status_code=status_code,
            duration_ms=int((perf_counter() - started_at) * 1000),
        )
        reset_contextvars(**context_tokens)


@asynccontextmanager
async def app_lifespan(_: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    configure_application_logging(settings)
    scheduler: SchedulerService | None = None

    if settings.scheduler_enabled:
        scheduler = SchedulerService(
            get_refresh_runner(),
            daily_hour=settings.refresh_daily_hour,
            daily_minute=settings.refresh_daily_minute,
            timezone=settings.default_timezone,
            poll_interval_seconds=settings.scheduler_poll_interval_seconds,
            telemetry=get_telemetry(),
            lock_path=settings.data_dir / "scheduler.lock",
        )
        scheduler.start()

    try:
        yield
    finally:
        if scheduler is not None:
            scheduler.stop()


def create_app() -> FastAPI:
    app = FastAPI(title="Ratings Refresh API", version="0.1.0", lifespan=app_lifespan)
    app.middleware("http")(request_context_middleware)
    app.include_router(router)
    app.add_api_route(
        "/health",
        health_check,
        methods=["GET"],
        tags=["system"],
        operation_id="health_check",
    )

    return app


app = create_app()
