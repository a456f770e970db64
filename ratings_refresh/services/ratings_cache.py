from __future__ import annotations

import gzip
import http.client
import logging
import os
import time
import zlib
from collections.abc import Callable
from pathlib import Path
from typing import BinaryIO
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from ratings_refresh.services.cancellation import CancellationToken
from ratings_refresh.services.errors import (
    DataValidationError,
    NetworkError,
    SizeLimitExceededError,
)
from ratings_refresh.telemetry import TelemetryClient

LOGGER = logging.getLogger("ratings_refresh.cache")

DEFAULT_DATASET_URL = "https://datasets.imdbws.com/title.ratings.tsv.gz"
CACHE_DIR_NAME = "imdb-ratings-cache"
CACHE_FILE_NAME = "title.ratings.tsv"
DEFAULT_MAX_AGE_SECONDS = 23 * 60 * 60
DEFAULT_MAX_DECOMPRESSED_BYTES = 100 * 1024 * 1024
COPY_BLOCK_SIZE = 64 * 1024


class RatingsCacheManager:
    """
    Owns the decompressed local copy of the ratings dataset.

    The canonical file is only ever produced by renaming a fully written
    temporary file over it, so readers never observe a partial download.
    """

    def __init__(
        self,
        data_dir: Path,
        *,
        dataset_url: str = DEFAULT_DATASET_URL,
        max_age_seconds: float = DEFAULT_MAX_AGE_SECONDS,
        max_decompressed_bytes: int = DEFAULT_MAX_DECOMPRESSED_BYTES,
        http_timeout_seconds: float = 60.0,
        user_agent: str = "ratings-refresh/0.1",
        telemetry: TelemetryClient | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._cache_path = data_dir / CACHE_DIR_NAME / CACHE_FILE_NAME
        self._temp_path = self._cache_path.with_name(f"{CACHE_FILE_NAME}.tmp")
        self._dataset_url = dataset_url
        self._max_age_seconds = max(0.0, max_age_seconds)
        self._max_decompressed_bytes = max(1, max_decompressed_bytes)
        self._http_timeout_seconds = max(1.0, http_timeout_seconds)
        self._user_agent = user_agent.strip() or "ratings-refresh/0.1"
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._clock = clock

    @property
    def cache_path(self) -> Path:
        return self._cache_path

    @property
    def temp_path(self) -> Path:
        return self._temp_path

    @property
    def has_cache(self) -> bool:
        return self._cache_path.is_file()

    def cache_age_seconds(self) -> float | None:
        try:
            modified_at = self._cache_path.stat().st_mtime
        except FileNotFoundError:
            return None
        return max(0.0, self._clock() - modified_at)

    def is_fresh(self) -> bool:
        age = self.cache_age_seconds()
        return age is not None and age < self._max_age_seconds

    def acquire_local_path(self, cancellation: CancellationToken | None = None) -> Path:
        token = cancellation if cancellation is not None else CancellationToken.none()
        if self.is_fresh():
            LOGGER.info("ratings cache is fresh, skipping download path=%s", self._cache_path)
            return self._cache_path

        token.raise_if_cancelled()
        self._download_and_decompress(token)
        return self._cache_path

    def invalidate(self) -> bool:
        deleted = False
        for path in (self._cache_path, self._temp_path):
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            deleted = True
        if deleted:
            LOGGER.info("ratings cache invalidated path=%s", self._cache_path)
        return deleted

    def _download_and_decompress(self, cancellation: CancellationToken) -> None:
        LOGGER.info("downloading ratings dataset url=%s", self._dataset_url)
        self._cache_path.parent.mkdir(parents=True, exist_ok=True)
        started_at = time.perf_counter()
        self._telemetry.emit("refresh.cache.download.start", url=self._dataset_url)

        try:
            written = self._stream_to_temp_file(cancellation)
            os.replace(self._temp_path, self._cache_path)
        except BaseException as exc:
            self._try_delete(self._temp_path)
            self._telemetry.emit(
                "refresh.cache.download.error",
                duration_ms=int((time.perf_counter() - started_at) * 1000),
                error_type=type(exc).__name__,
            )
            raise

        self._telemetry.emit(
            "refresh.cache.download.finish",
            duration_ms=int((time.perf_counter() - started_at) * 1000),
            decompressed_bytes=written,
        )
        LOGGER.info(
            "ratings dataset downloaded and decompressed path=%s bytes=%s",
            self._cache_path,
            written,
        )

    def _stream_to_temp_file(self, cancellation: CancellationToken) -> int:
        request = Request(
            self._dataset_url,
            headers={"User-Agent": self._user_agent, "Accept": "application/gzip"},
            method="GET",
        )
        try:
            response = urlopen(request, timeout=self._http_timeout_seconds)
        except HTTPError as exc:
            raise NetworkError(
                f"ratings download failed with HTTP {exc.code}",
                status_code=int(exc.code),
            ) from exc
        except (URLError, TimeoutError, OSError, http.client.HTTPException) as exc:
            raise NetworkError(f"ratings download failed: {_describe(exc)}") from exc

        written = 0
        with response, gzip.GzipFile(fileobj=response, mode="rb") as decompressed:
            with self._temp_path.open("wb") as target:
                while True:
                    cancellation.raise_if_cancelled()
                    block = _read_block(decompressed)
                    if not block:
                        break
                    written += len(block)
                    if written > self._max_decompressed_bytes:
                        raise SizeLimitExceededError(
                            "decompressed ratings dataset exceeds "
                            f"{self._max_decompressed_bytes} bytes",
                            limit_bytes=self._max_decompressed_bytes,
                        )
                    target.write(block)
        return written

    def _try_delete(self, path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError:
            LOGGER.warning("failed to clean up temporary file path=%s", path, exc_info=True)


def _read_block(stream: BinaryIO) -> bytes:
    # gzip.BadGzipFile subclasses OSError, so it must be matched first.
    try:
        return stream.read(COPY_BLOCK_SIZE)
    except (gzip.BadGzipFile, EOFError, zlib.error) as exc:
        raise DataValidationError(f"ratings dataset is not a valid gzip stream: {exc}") from exc
    except (URLError, TimeoutError, OSError, http.client.HTTPException) as exc:
        raise NetworkError(f"ratings download interrupted: {_describe(exc)}") from exc


def _describe(exc: BaseException) -> str:
    reason = getattr(exc, "reason", None)
    if reason is not None:
        return str(reason)
    return str(exc) or type(exc).__name__
