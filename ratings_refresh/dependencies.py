from __future__ import annotations

from functools import lru_cache

from ratings_refresh.config import AppSettings, load_settings
from ratings_refresh.models.refresh import RefreshOptions
from ratings_refresh.repositories.catalog_repository import CatalogRepository
from ratings_refresh.repositories.database import Database
from ratings_refresh.repositories.refresh_runs_repository import RefreshRunsRepository
from ratings_refresh.services.ratings_cache import RatingsCacheManager
from ratings_refresh.services.ratings_parser import RatingsParser
from ratings_refresh.services.ratings_refresh_service import RatingsRefreshService
from ratings_refresh.services.refresh_runner import RefreshRunner
from ratings_refresh.telemetry import TelemetryClient, build_telemetry_client


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return load_settings()


@lru_cache(maxsize=1)
def get_database() -> Database:
    database = Database(get_settings().db_path)
    database.initialize()
    return database


@lru_cache(maxsize=1)
def get_telemetry() -> TelemetryClient:
    settings = get_settings()
    return build_telemetry_client(
        enabled=settings.telemetry_enabled,
        sink=settings.telemetry_sink,
    )


@lru_cache(maxsize=1)
def get_cache_manager() -> RatingsCacheManager:
    settings = get_settings()
    return RatingsCacheManager(
        settings.data_dir,
        dataset_url=settings.dataset_url,
        max_age_seconds=settings.cache_max_age_hours * 3600,
        http_timeout_seconds=settings.dataset_http_timeout_seconds,
        user_agent=settings.dataset_user_agent,
        telemetry=get_telemetry(),
    )


@lru_cache(maxsize=1)
def get_runs_repository() -> RefreshRunsRepository:
    return RefreshRunsRepository(get_database())


@lru_cache(maxsize=1)
def get_refresh_runner() -> RefreshRunner:
    settings = get_settings()
    database = get_database()
    return RefreshRunner(
        refresh_service=RatingsRefreshService(
            catalog=CatalogRepository(database),
            cache_manager=get_cache_manager(),
            parser=RatingsParser(),
            telemetry=get_telemetry(),
            transient_retry_delay_seconds=settings.transient_retry_delay_seconds,
        ),
        runs_repository=get_runs_repository(),
        default_options=RefreshOptions.from_settings(settings),
    )


def reset_cached_dependencies() -> None:
    get_refresh_runner.cache_clear()
    get_runs_repository.cache_clear()
    get_cache_manager.cache_clear()
    get_telemetry.cache_clear()
    get_database.cache_clear()
    get_settings.cache_clear()
