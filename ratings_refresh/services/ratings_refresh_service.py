from __future__ import annotations

import logging
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol
from uuid import uuid4

from structlog.contextvars import bind_contextvars, reset_contextvars

from ratings_refresh.models.catalog import CatalogItem, ItemKind, PendingUpdate
from ratings_refresh.models.ratings import ParseResult, ParseStats, RatingRecord
from ratings_refresh.models.refresh import RefreshOptions, RefreshSummary
from ratings_refresh.services.cancellation import CancellationToken
from ratings_refresh.services.errors import (
    DataValidationError,
    NetworkError,
    PersistenceError,
    RatingsRefreshError,
    error_category,
)
from ratings_refresh.services.progress import ProgressSink, ProgressTracker
from ratings_refresh.services.ratings_cache import RatingsCacheManager
from ratings_refresh.services.ratings_parser import RatingsParser
from ratings_refresh.telemetry import TelemetryClient

LOGGER = logging.getLogger("ratings_refresh.refresh")

BATCH_SIZE = 500
UNCHANGED_EPSILON = 0.01
DEBUG_SAMPLE_LIMIT_PER_CATEGORY = 10
TRANSIENT_RETRY_DELAY_SECONDS = 3.0

PROGRESS_FILTER_BUILT = 5.0
PROGRESS_FILE_ACQUIRED = 10.0
PROGRESS_PARSED = 30.0
PROGRESS_SCANNED = 90.0


class CatalogGateway(Protocol):
    def list_items(self, *, kinds: Sequence[ItemKind]) -> list[CatalogItem]:
        """Items with an external rating id, of the given kinds, non-virtual, recursively."""
        ...

    def persist_batch(self, items: Sequence[CatalogItem], parent_key: str | None) -> None:
        """Persist every item of the batch or none of them."""
        ...


@dataclass
class _ScanCounters:
    total_items: int = 0
    distinct_ids: int = 0
    skipped_missing_id: int = 0
    skipped_below_minimum: int = 0
    skipped_unchanged: int = 0
    not_found: int = 0
    logged_not_found: int = 0
    logged_below_minimum: int = 0
    updated: int = 0
    used_stale_cache: bool = False
    parse_stats: ParseStats | None = None
    pending: list[PendingUpdate] = field(default_factory=list)

    def summary(self) -> RefreshSummary:
        return RefreshSummary(
            total_items=self.total_items,
            distinct_ids=self.distinct_ids,
            updated=self.updated,
            skipped_unchanged=self.skipped_unchanged,
            skipped_below_minimum=self.skipped_below_minimum,
            skipped_missing_id=self.skipped_missing_id,
            not_found=self.not_found,
            used_stale_cache=self.used_stale_cache,
            parse_stats=self.parse_stats,
        )


class RatingsRefreshService:
    """
    Runs one full reconciliation of catalog ratings against the dataset.

    The run builds the set of identifiers present in the catalog, obtains a
    validated lookup table restricted to that set, classifies every item, and
    persists the resulting updates grouped by parent in fixed-size chunks.
    A chunk whose persistence fails is reverted in memory before the error
    propagates; chunks persisted earlier stay committed.
    """

    def __init__(
        self,
        *,
        catalog: CatalogGateway,
        cache_manager: RatingsCacheManager,
        parser: RatingsParser,
        telemetry: TelemetryClient | None = None,
        transient_retry_delay_seconds: float = TRANSIENT_RETRY_DELAY_SECONDS,
        batch_size: int = BATCH_SIZE,
    ) -> None:
        self._catalog = catalog
        self._cache = cache_manager
        self._parser = parser
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._transient_retry_delay_seconds = max(0.0, transient_retry_delay_seconds)
        self._batch_size = max(1, batch_size)

    def run(
        self,
        options: RefreshOptions,
        *,
        progress: ProgressSink | None = None,
        cancellation: CancellationToken | None = None,
        run_id: str | None = None,
    ) -> RefreshSummary:
        token = cancellation if cancellation is not None else CancellationToken.none()
        tracker = ProgressTracker(progress)
        resolved_run_id = run_id or f"run_{uuid4().hex}"
        context_tokens = bind_contextvars(refresh_run_id=resolved_run_id)
        counters = _ScanCounters()
        started_at = time.perf_counter()
        self._telemetry.emit(
            "refresh.run.start",
            run_id=resolved_run_id,
            minimum_votes=options.minimum_votes,
            include_movies=options.include_movies,
            include_series=options.include_series,
        )
        LOGGER.info(
            "starting ratings refresh minimum_votes=%s movies=%s series=%s",
            options.minimum_votes,
            options.include_movies,
            options.include_series,
        )
        try:
            self._run(options, counters, tracker, token)
        except BaseException as exc:
            summary = counters.summary()
            if isinstance(exc, RatingsRefreshError):
                exc.partial_summary = summary
            self._telemetry.emit(
                "refresh.run.error",
                run_id=resolved_run_id,
                duration_ms=int((time.perf_counter() - started_at) * 1000),
                error_type=type(exc).__name__,
                error_category=error_category(exc),
                updated=summary.updated,
            )
            LOGGER.warning(
                "ratings refresh ended without completing category=%s updated=%s",
                error_category(exc),
                summary.updated,
            )
            raise
        finally:
            reset_contextvars(**context_tokens)

        summary = counters.summary()
        self._telemetry.emit(
            "refresh.run.finish",
            run_id=resolved_run_id,
            duration_ms=int((time.perf_counter() - started_at) * 1000),
            updated=summary.updated,
            skipped=summary.skipped_total,
            not_found=summary.not_found,
            used_stale_cache=summary.used_stale_cache,
        )
        return summary

    def _run(
        self,
        options: RefreshOptions,
        counters: _ScanCounters,
        tracker: ProgressTracker,
        token: CancellationToken,
    ) -> None:
        tracker.report(0)
        kinds = options.item_kinds()
        if not kinds:
            LOGGER.warning("no library item kinds selected; nothing to update")
            tracker.finish()
            return

        items = self._catalog.list_items(kinds=kinds)
        counters.total_items = len(items)
        if not items:
            LOGGER.info("found 0 catalog items with external rating ids")
            tracker.finish()
            return

        catalog_ids = {
            external_id
            for external_id in (_normalize_id(item.external_rating_id) for item in items)
            if external_id is not None
        }
        counters.distinct_ids = len(catalog_ids)
        LOGGER.info(
            "found catalog items with external rating ids items=%s distinct_ids=%s",
            len(items),
            len(catalog_ids),
        )
        if not catalog_ids:
            counters.skipped_missing_id = len(items)
            LOGGER.warning("no valid external rating ids on selected items; nothing to update")
            tracker.finish()
            return
        tracker.report(PROGRESS_FILTER_BUILT)

        parsed = self._load_ratings(catalog_ids, counters, tracker, token)
        counters.parse_stats = parsed.stats
        tracker.report(PROGRESS_PARSED)

        self._scan(items, parsed.table, options, counters, tracker, token)
        tracker.report(PROGRESS_SCANNED)

        self._persist(counters, tracker, token)
        tracker.finish()
        LOGGER.info(
            (
                "ratings refresh complete updated=%s skipped=%s unchanged=%s "
                "below_minimum=%s missing_id=%s not_found=%s"
            ),
            counters.updated,
            counters.skipped_unchanged + counters.skipped_below_minimum + counters.skipped_missing_id,
            counters.skipped_unchanged,
            counters.skipped_below_minimum,
            counters.skipped_missing_id,
            counters.not_found,
        )

    def _load_ratings(
        self,
        include_ids: set[str],
        counters: _ScanCounters,
        tracker: ProgressTracker,
        token: CancellationToken,
    ) -> ParseResult:
        try:
            return self._acquire_and_parse(include_ids, counters, tracker, token)
        except DataValidationError:
            LOGGER.warning(
                "ratings data failed validation on first attempt; invalidating cache and retrying",
                exc_info=True,
            )
            self._cache.invalidate()

        try:
            return self._acquire_and_parse(include_ids, counters, tracker, token)
        except DataValidationError:
            LOGGER.error("ratings data failed validation after retry", exc_info=True)
            raise

    def _acquire_and_parse(
        self,
        include_ids: set[str],
        counters: _ScanCounters,
        tracker: ProgressTracker,
        token: CancellationToken,
    ) -> ParseResult:
        path = self._acquire_with_transient_retry(counters, token)
        tracker.report(PROGRESS_FILE_ACQUIRED)
        return self._parser.parse_filtered(path, include_ids, token)

    def _acquire_with_transient_retry(
        self,
        counters: _ScanCounters,
        token: CancellationToken,
    ) -> Path:
        try:
            return self._cache.acquire_local_path(token)
        except NetworkError:
            LOGGER.warning(
                "transient network error downloading ratings; retrying once after %ss",
                self._transient_retry_delay_seconds,
                exc_info=True,
            )

        token.wait(self._transient_retry_delay_seconds)
        try:
            return self._cache.acquire_local_path(token)
        except NetworkError:
            if not self._cache.has_cache:
                LOGGER.error("download failed after retry and no cached ratings file exists")
                raise
            LOGGER.warning(
                "download failed after retry; falling back to stale cache path=%s age_seconds=%s",
                self._cache.cache_path,
                self._cache.cache_age_seconds(),
                exc_info=True,
            )
            counters.used_stale_cache = True
            return self._cache.cache_path

    def _scan(
        self,
        items: Sequence[CatalogItem],
        table: Mapping[str, RatingRecord],
        options: RefreshOptions,
        counters: _ScanCounters,
        tracker: ProgressTracker,
        token: CancellationToken,
    ) -> None:
        item_debug = options.enable_item_debug_logging and LOGGER.isEnabledFor(logging.DEBUG)

        for index, item in enumerate(items):
            token.raise_if_cancelled()
            external_id = _normalize_id(item.external_rating_id)
            record = table.get(external_id) if external_id is not None else None

            if external_id is None:
                counters.skipped_missing_id += 1
            elif record is None:
                counters.not_found += 1
                if item_debug and counters.logged_not_found < DEBUG_SAMPLE_LIMIT_PER_CATEGORY:
                    counters.logged_not_found += 1
                    LOGGER.debug(
                        "external id %s not found in ratings file for %r",
                        external_id,
                        item.name,
                    )
            elif record.vote_count < options.minimum_votes:
                counters.skipped_below_minimum += 1
                if item_debug and counters.logged_below_minimum < DEBUG_SAMPLE_LIMIT_PER_CATEGORY:
                    counters.logged_below_minimum += 1
                    LOGGER.debug(
                        "skipping %r; %s votes below minimum %s",
                        item.name,
                        record.vote_count,
                        options.minimum_votes,
                    )
            elif (
                item.community_rating is not None
                and abs(item.community_rating - record.rating) < UNCHANGED_EPSILON
            ):
                counters.skipped_unchanged += 1
            else:
                counters.pending.append(
                    PendingUpdate(
                        item=item,
                        parent_key=item.parent_key,
                        old_rating=item.community_rating,
                        new_rating=record.rating,
                    )
                )

            tracker.report_fraction(PROGRESS_PARSED, 60.0, index + 1, len(items))

        if item_debug:
            _log_suppressed(counters.not_found - counters.logged_not_found, "ids not found in ratings data")
            _log_suppressed(
                counters.skipped_below_minimum - counters.logged_below_minimum,
                "items below minimum votes",
            )

    def _persist(
        self,
        counters: _ScanCounters,
        tracker: ProgressTracker,
        token: CancellationToken,
    ) -> None:
        pending = counters.pending
        if not pending:
            return

        LOGGER.info("batch saving updated ratings count=%s", len(pending))
        groups: dict[str | None, list[PendingUpdate]] = {}
        for update in pending:
            groups.setdefault(update.parent_key, []).append(update)

        for parent_key, group in groups.items():
            for offset in range(0, len(group), self._batch_size):
                token.raise_if_cancelled()
                chunk = group[offset : offset + self._batch_size]
                self._persist_chunk(parent_key, chunk, counters.updated)
                counters.updated += len(chunk)
                tracker.report_fraction(PROGRESS_SCANNED, 10.0, counters.updated, len(pending))

    def _persist_chunk(
        self,
        parent_key: str | None,
        chunk: Sequence[PendingUpdate],
        persisted_so_far: int,
    ) -> None:
        for update in chunk:
            update.item.community_rating = update.new_rating
        try:
            self._catalog.persist_batch([update.item for update in chunk], parent_key)
        except BaseException as exc:
            for update in chunk:
                update.item.community_rating = update.old_rating
            if isinstance(exc, (RatingsRefreshError, KeyboardInterrupt, SystemExit)):
                raise
            raise PersistenceError(
                f"failed to persist {len(chunk)} rating updates under parent {parent_key!r}: {exc}",
                parent_key=parent_key,
                batch_size=len(chunk),
                persisted_so_far=persisted_so_far,
            ) from exc


def _normalize_id(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    return normalized or None


def _log_suppressed(count: int, description: str) -> None:
    if count > 0:
        LOGGER.debug(
            "suppressed %s additional per-item debug logs for %s (sample limit %s)",
            count,
            description,
            DEBUG_SAMPLE_LIMIT_PER_CATEGORY,
        )

