from __future__ import annotations

from ratings_refresh.models.refresh import RefreshSummary


class RatingsRefreshError(Exception):
    """Base for run-level failures; `partial_summary` holds the counts reached before failing."""

    category = "internal"
    partial_summary: RefreshSummary | None = None


class NetworkError(RatingsRefreshError):
    category = "network"

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SizeLimitExceededError(RatingsRefreshError):
    category = "size_limit"

    def __init__(self, message: str, *, limit_bytes: int) -> None:
        super().__init__(message)
        self.limit_bytes = limit_bytes


class DataValidationError(RatingsRefreshError):
    category = "data_validation"

    def __init__(
        self,
        message: str,
        *,
        total_rows: int = 0,
        valid_rows: int = 0,
        parse_errors: int = 0,
    ) -> None:
        super().__init__(message)
        self.total_rows = total_rows
        self.valid_rows = valid_rows
        self.parse_errors = parse_errors


class PersistenceError(RatingsRefreshError):
    category = "persistence"

    def __init__(
        self,
        message: str,
        *,
        parent_key: str | None,
        batch_size: int,
        persisted_so_far: int,
    ) -> None:
        super().__init__(message)
        self.parent_key = parent_key
        self.batch_size = batch_size
        self.persisted_so_far = persisted_so_far


class RefreshCancelledError(RatingsRefreshError):
    category = "cancelled"


def error_category(exc: BaseException) -> str:
    if isinstance(exc, RatingsRefreshError):
        return exc.category
    return "internal"
