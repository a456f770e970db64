from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping
from pathlib import Path
from types import MappingProxyType

from ratings_refresh.models.ratings import ParseResult, ParseStats, RatingRecord
from ratings_refresh.services.cancellation import CancellationToken
from ratings_refresh.services.errors import DataValidationError

LOGGER = logging.getLogger("ratings_refresh.parser")

EXPECTED_HEADER = b"tconst\taverageRating\tnumVotes"
MIN_EXPECTED_ROWS = 500_000
MAX_PARSE_ERROR_RATIO = 0.01
DEFAULT_BUFFER_SIZE = 64 * 1024

_UTF8_BOM = b"\xef\xbb\xbf"
_ID_PREFIX = b"tt"
_ID_PATTERN = re.compile(rb"tt[0-9]{1,18}")
_RATING_PATTERN = re.compile(rb"[+-]?(?:[0-9]+(?:\.[0-9]*)?|\.[0-9]+)(?:[eE][+-]?[0-9]+)?")
_VOTES_PATTERN = re.compile(rb"[+-]?[0-9]{1,18}")


class _IdMatcher:
    """
    Decides whether a row identifier belongs to the requested set.

    Well-formed identifiers (`tt` + digits) are looked up by their numeric
    suffix so unmatched rows never allocate a key; the bytes are only compared
    on a numeric hit, which keeps `tt1` from matching a row keyed `tt0000001`.
    """

    def __init__(self, include_ids: Iterable[str]) -> None:
        self._by_number: dict[int, set[bytes]] = {}
        self._literals: set[bytes] = set()
        for raw_id in include_ids:
            encoded = raw_id.encode("utf-8")
            if _ID_PATTERN.fullmatch(encoded):
                self._by_number.setdefault(int(encoded[2:]), set()).add(encoded)
            else:
                self._literals.add(encoded)

    def match(self, buffer: bytearray, start: int, end: int) -> str | None:
        if _ID_PATTERN.fullmatch(buffer, start, end):
            candidates = self._by_number.get(int(buffer[start + len(_ID_PREFIX) : end]))
            if not candidates:
                return None
            key = bytes(buffer[start:end])
            return key.decode("ascii") if key in candidates else None

        if not self._literals:
            return None
        key = bytes(buffer[start:end])
        if key in self._literals:
            return key.decode("utf-8", errors="replace")
        return None


class _RowAccumulator:
    __slots__ = ("matcher", "table", "header_seen", "total_rows", "valid_rows", "parse_errors")

    def __init__(self, matcher: _IdMatcher | None) -> None:
        self.matcher = matcher
        self.table: dict[str, RatingRecord] = {}
        self.header_seen = False
        self.total_rows = 0
        self.valid_rows = 0
        self.parse_errors = 0

    def consume(self, buffer: bytearray, start: int, end: int) -> None:
        if end > start and buffer[end - 1] == 0x0D:
            end -= 1
        if end == start:
            return

        if not self.header_seen:
            self._check_header(bytes(buffer[start:end]))
            return

        self.total_rows += 1
        first_tab = buffer.find(b"\t", start, end)
        second_tab = buffer.find(b"\t", first_tab + 1, end) if first_tab >= 0 else -1
        if (
            first_tab <= start
            or second_tab < 0
            or buffer.find(b"\t", second_tab + 1, end) >= 0
            or not _RATING_PATTERN.fullmatch(buffer, first_tab + 1, second_tab)
            or not _VOTES_PATTERN.fullmatch(buffer, second_tab + 1, end)
        ):
            self.parse_errors += 1
            return

        self.valid_rows += 1
        if self.matcher is None:
            key: str | None = buffer[start:first_tab].decode("utf-8", errors="replace")
        else:
            key = self.matcher.match(buffer, start, first_tab)
        if key is None:
            return

        self.table[key] = RatingRecord(
            rating=float(buffer[first_tab + 1 : second_tab]),
            vote_count=int(buffer[second_tab + 1 : end]),
        )

    def _check_header(self, line: bytes) -> None:
        if line.startswith(_UTF8_BOM):
            line = line[len(_UTF8_BOM) :]
        if line != EXPECTED_HEADER:
            raise DataValidationError(
                "ratings file has an invalid or missing header: "
                f"{line.decode('utf-8', errors='replace')!r}"
            )
        self.header_seen = True


class RatingsParser:
    """Streams the ratings TSV into an immutable lookup table, validating the whole file."""

    def __init__(
        self,
        *,
        min_expected_rows: int = MIN_EXPECTED_ROWS,
        max_parse_error_ratio: float = MAX_PARSE_ERROR_RATIO,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
    ) -> None:
        self._min_expected_rows = max(1, min_expected_rows)
        self._max_parse_error_ratio = max(0.0, max_parse_error_ratio)
        self._buffer_size = max(1, buffer_size)

    def parse(
        self,
        path: Path,
        cancellation: CancellationToken | None = None,
    ) -> ParseResult:
        return self._parse(path, include_ids=None, cancellation=cancellation)

    def parse_filtered(
        self,
        path: Path,
        include_ids: Iterable[str],
        cancellation: CancellationToken | None = None,
    ) -> ParseResult:
        return self._parse(path, include_ids=include_ids, cancellation=cancellation)

    def _parse(
        self,
        path: Path,
        *,
        include_ids: Iterable[str] | None,
        cancellation: CancellationToken | None,
    ) -> ParseResult:
        token = cancellation if cancellation is not None else CancellationToken.none()
        rows = _RowAccumulator(_IdMatcher(include_ids) if include_ids is not None else None)
        self._read_lines(path, rows, token)

        if not rows.header_seen:
            raise DataValidationError("ratings file has an invalid or missing header: (empty file)")

        stats = ParseStats(
            total_rows=rows.total_rows,
            valid_rows=rows.valid_rows,
            parse_errors=rows.parse_errors,
            matched_rows=len(rows.table),
        )
        if include_ids is None:
            LOGGER.info(
                "parsed ratings valid_rows=%s total_rows=%s parse_errors=%s",
                stats.valid_rows,
                stats.total_rows,
                stats.parse_errors,
            )
        else:
            LOGGER.info(
                "parsed matching ratings matched=%s valid_rows=%s total_rows=%s parse_errors=%s",
                stats.matched_rows,
                stats.valid_rows,
                stats.total_rows,
                stats.parse_errors,
            )
        self._validate(stats)
        return ParseResult(table=_freeze(rows.table), stats=stats)

    def _read_lines(self, path: Path, rows: _RowAccumulator, cancellation: CancellationToken) -> None:
        buffer = bytearray(self._buffer_size)
        start = 0
        end = 0
        with path.open("rb") as handle:
            while True:
                cancellation.raise_if_cancelled()
                if end == len(buffer):
                    # A single line fills the whole buffer.
                    buffer.extend(bytes(len(buffer)))

                with memoryview(buffer)[end:] as target:
                    read = handle.readinto(target)
                if not read:
                    if start < end:
                        rows.consume(buffer, start, end)
                    return
                end += read

                newline = buffer.find(b"\n", start, end)
                while newline >= 0:
                    rows.consume(buffer, start, newline)
                    start = newline + 1
                    newline = buffer.find(b"\n", start, end)

                if start > 0:
                    remaining = end - start
                    buffer[:remaining] = buffer[start:end]
                    start = 0
                    end = remaining

    def _validate(self, stats: ParseStats) -> None:
        if stats.valid_rows == 0:
            raise DataValidationError(
                "ratings file contains header but no valid data rows",
                total_rows=stats.total_rows,
                parse_errors=stats.parse_errors,
            )
        if stats.valid_rows < self._min_expected_rows:
            raise DataValidationError(
                f"ratings file appears truncated: only {stats.valid_rows} valid rows "
                f"(expected at least {self._min_expected_rows})",
                total_rows=stats.total_rows,
                valid_rows=stats.valid_rows,
                parse_errors=stats.parse_errors,
            )
        if stats.error_ratio > self._max_parse_error_ratio:
            raise DataValidationError(
                f"ratings file appears corrupt: {stats.parse_errors} parse errors out of "
                f"{stats.total_rows} rows ({stats.error_ratio:.1%})",
                total_rows=stats.total_rows,
                valid_rows=stats.valid_rows,
                parse_errors=stats.parse_errors,
            )


def _freeze(table: dict[str, RatingRecord]) -> Mapping[str, RatingRecord]:
    return MappingProxyType(table)
