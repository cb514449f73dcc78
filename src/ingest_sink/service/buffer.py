"""Per-partition row buffer."""

from __future__ import annotations

from typing import Any

from ingest_sink.records import SinkRecord, estimate_row_size, to_row

NO_OFFSET = -1


class StreamingBuffer:
    """Rows waiting to be appended to one partition's channel.

    Never shared across partitions; the owning channel serialises access.
    """

    def __init__(self) -> None:
        self._rows: list[dict[str, Any]] = []
        self._size_bytes = 0
        self._first_offset = NO_OFFSET
        self._last_offset = NO_OFFSET

    def insert(self, record: SinkRecord) -> None:
        row = to_row(record)
        self._rows.append(row)
        self._size_bytes += estimate_row_size(row)
        if self._first_offset == NO_OFFSET:
            self._first_offset = record.offset
        self._last_offset = record.offset

    def drain(self) -> list[dict[str, Any]]:
        """Return the buffered rows and reset to empty."""
        rows = self._rows
        self._rows = []
        self._size_bytes = 0
        self._first_offset = NO_OFFSET
        self._last_offset = NO_OFFSET
        return rows

    @property
    def rows(self) -> list[dict[str, Any]]:
        return list(self._rows)

    @property
    def buffer_size(self) -> int:
        """Cumulative estimated size of the buffered rows, in bytes."""
        return self._size_bytes

    @property
    def num_records(self) -> int:
        return len(self._rows)

    @property
    def first_offset(self) -> int:
        return self._first_offset

    @property
    def last_offset(self) -> int:
        return self._last_offset

    def is_empty(self) -> bool:
        return not self._rows

    def __repr__(self) -> str:
        return (
            f"StreamingBuffer(records={self.num_records}, bytes={self._size_bytes}, "
            f"offsets={self._first_offset}..{self._last_offset})"
        )
