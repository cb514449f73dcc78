"""Flush-trigger policy: size, record count and elapsed time."""

from __future__ import annotations

from dataclasses import dataclass, replace

import structlog

from ingest_sink.config.models import (
    BUFFER_COUNT_RECORDS_DEFAULT,
    BUFFER_FLUSH_TIME_SEC_DEFAULT,
    BUFFER_FLUSH_TIME_SEC_MIN,
    BUFFER_SIZE_BYTES_DEFAULT,
    BUFFER_SIZE_BYTES_MIN,
    BufferConfig,
)
from ingest_sink.service.buffer import StreamingBuffer

logger = structlog.get_logger()


@dataclass(frozen=True, slots=True)
class FlushThresholds:
    """Immutable threshold snapshot.

    The sink service swaps in a new instance on every setter call, and each
    flush check reads one snapshot, so readers never see a half-updated set.
    """

    size_bytes: int = BUFFER_SIZE_BYTES_DEFAULT
    record_count: int = BUFFER_COUNT_RECORDS_DEFAULT  # 0 disables
    flush_time_seconds: int = BUFFER_FLUSH_TIME_SEC_DEFAULT

    def with_record_count(self, num: int) -> FlushThresholds:
        if num < 0:
            logger.error(
                "thresholds.record_count_negative", requested=num, applied=0
            )
            return replace(self, record_count=0)
        logger.info("thresholds.record_count_set", record_count=num)
        return replace(self, record_count=num)

    def with_size_bytes(self, size: int) -> FlushThresholds:
        if size < BUFFER_SIZE_BYTES_MIN:
            logger.error(
                "thresholds.size_below_minimum",
                requested=size,
                minimum=BUFFER_SIZE_BYTES_MIN,
                applied=BUFFER_SIZE_BYTES_DEFAULT,
            )
            return replace(self, size_bytes=BUFFER_SIZE_BYTES_DEFAULT)
        logger.info("thresholds.size_set", size_bytes=size)
        return replace(self, size_bytes=size)

    def with_flush_time(self, seconds: int) -> FlushThresholds:
        if seconds < BUFFER_FLUSH_TIME_SEC_MIN:
            logger.error(
                "thresholds.flush_time_below_minimum",
                requested=seconds,
                applied=BUFFER_FLUSH_TIME_SEC_MIN,
            )
            return replace(self, flush_time_seconds=BUFFER_FLUSH_TIME_SEC_MIN)
        logger.info("thresholds.flush_time_set", flush_time_seconds=seconds)
        return replace(self, flush_time_seconds=seconds)

    @classmethod
    def from_config(cls, config: BufferConfig) -> FlushThresholds:
        """Build a snapshot from config, clamping each value like the setters do."""
        return (
            cls()
            .with_size_bytes(config.size_bytes)
            .with_record_count(config.count_records)
            .with_flush_time(config.flush_time_seconds)
        )

    def buffer_full(self, buffer: StreamingBuffer) -> bool:
        """Size or record-count trigger, checked after every insert."""
        if buffer.buffer_size >= self.size_bytes:
            return True
        return self.record_count != 0 and buffer.num_records >= self.record_count

    def flush_due(self, previous_flush: float, now: float) -> bool:
        """Time trigger; *previous_flush* and *now* come from the same clock."""
        return now - previous_flush >= self.flush_time_seconds
