"""Per-partition ingestion channel with its buffer and offset watermark."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable

import structlog
from tenacity import (
    AsyncRetrying,
    stop_after_attempt,
    wait_exponential,
    wait_exponential_jitter,
)

from ingest_sink.config.models import RetryConfig
from ingest_sink.errors import ChannelFlushError, ChannelOpenError
from ingest_sink.ingestion.base import IngestChannel, IngestClient
from ingest_sink.records import SinkRecord
from ingest_sink.service.buffer import NO_OFFSET, StreamingBuffer

logger = structlog.get_logger()


def _parse_offset_token(token: str | None) -> int:
    if token is None or token == "":
        return NO_OFFSET
    try:
        return int(token)
    except ValueError:
        msg = f"Offset token {token!r} is not an integer"
        raise ValueError(msg) from None


class TopicPartitionChannel:
    """Wraps one partition's ingestion channel.

    ``offset_persisted`` is the highest offset the ingestion service has
    acknowledged for this channel. The value handed upstream for commit is one
    past it (Kafka's "next offset to fetch"), or 0 while nothing has been
    persisted. It only moves forward while this instance lives.
    """

    def __init__(
        self,
        channel: IngestChannel,
        topic_partition: tuple[str, int],
        *,
        database: str,
        schema_name: str,
        table_name: str,
        offset_persisted: int = NO_OFFSET,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._channel = channel
        self._topic_partition = topic_partition
        self._database = database
        self._schema_name = schema_name
        self._table_name = table_name
        self._clock = clock
        self._buffer = StreamingBuffer()
        self._lock = asyncio.Lock()
        self._closed = False
        self._offset_persisted = offset_persisted
        # Highest offset accepted into the buffer or already persisted.
        self._processed_offset = offset_persisted
        # Offset the consumer was asked to resume from; records past it are
        # rejected until it is redelivered.
        self._rewind_offset: int | None = None
        self._previous_flush_time = clock()

    @classmethod
    async def open(
        cls,
        client: IngestClient,
        topic_partition: tuple[str, int],
        channel_name: str,
        *,
        database: str,
        schema_name: str,
        table_name: str,
        retry: RetryConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> TopicPartitionChannel:
        """Open the external channel and recover its committed offset token."""
        loop = asyncio.get_running_loop()
        try:
            channel = await loop.run_in_executor(
                None,
                client.open_channel,
                channel_name,
                database,
                schema_name,
                table_name,
            )
        except Exception as exc:
            logger.error(
                "channel.open_failed",
                channel=channel_name,
                table=table_name,
                error=str(exc),
            )
            msg = f"Failed to open channel '{channel_name}' on table '{table_name}'"
            raise ChannelOpenError(msg) from exc

        retry_cfg = retry or RetryConfig()
        wait = (
            wait_exponential_jitter(
                initial=retry_cfg.initial_wait_seconds, max=retry_cfg.max_wait_seconds
            )
            if retry_cfg.jitter
            else wait_exponential(
                multiplier=retry_cfg.initial_wait_seconds, max=retry_cfg.max_wait_seconds
            )
        )
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(retry_cfg.max_attempts),
                wait=wait,
                reraise=True,
            ):
                with attempt:
                    token = await loop.run_in_executor(
                        None, channel.get_latest_committed_offset_token
                    )
            offset_persisted = _parse_offset_token(token)
        except Exception as exc:
            msg = f"Failed to fetch committed offset token for channel '{channel_name}'"
            raise ChannelOpenError(msg) from exc

        logger.info(
            "channel.opened",
            channel=channel_name,
            table=table_name,
            committed_offset=offset_persisted,
        )
        return cls(
            channel,
            topic_partition,
            database=database,
            schema_name=schema_name,
            table_name=table_name,
            offset_persisted=offset_persisted,
            clock=clock,
        )

    # -- Identity --------------------------------------------------------------

    @property
    def channel_name(self) -> str:
        return self._channel.name

    @property
    def topic_partition(self) -> tuple[str, int]:
        return self._topic_partition

    @property
    def table_name(self) -> str:
        return self._table_name

    @property
    def database(self) -> str:
        return self._database

    @property
    def schema_name(self) -> str:
        return self._schema_name

    # -- Buffer ----------------------------------------------------------------

    @property
    def streaming_buffer(self) -> StreamingBuffer:
        return self._buffer

    @property
    def previous_flush_time(self) -> float:
        return self._previous_flush_time

    @property
    def rewind_offset(self) -> int | None:
        return self._rewind_offset

    def rewind_to(self, offset: int) -> None:
        """Accept nothing past *offset* until the record at *offset* is redelivered."""
        self._rewind_offset = offset

    async def insert_record_to_buffer(self, record: SinkRecord) -> bool:
        """Buffer *record*; return False if it was already processed or is
        ahead of a pending rewind."""
        async with self._lock:
            if self._rewind_offset is not None:
                if record.offset > self._rewind_offset:
                    logger.debug(
                        "channel.record_ahead_of_rewind",
                        channel=self.channel_name,
                        offset=record.offset,
                        rewind_offset=self._rewind_offset,
                    )
                    return False
                self._rewind_offset = None
            if record.offset <= self._processed_offset:
                logger.debug(
                    "channel.record_skipped",
                    channel=self.channel_name,
                    offset=record.offset,
                    processed_offset=self._processed_offset,
                )
                return False
            self._buffer.insert(record)
            self._processed_offset = record.offset
            return True

    async def insert_buffered_rows(self) -> None:
        """Flush: append buffered rows and advance the persisted offset."""
        async with self._lock:
            if self._buffer.is_empty():
                self._previous_flush_time = self._clock()
                return

            rows = self._buffer.rows
            last_offset = self._buffer.last_offset
            loop = asyncio.get_running_loop()
            t0 = time.monotonic()
            try:
                token = await loop.run_in_executor(
                    None, self._channel.insert_rows, rows, str(last_offset)
                )
                committed = _parse_offset_token(token)
            except Exception as exc:
                logger.error(
                    "channel.insert_rows_failed",
                    channel=self.channel_name,
                    rows=len(rows),
                    error=str(exc),
                )
                msg = (
                    f"Failed to insert {len(rows)} rows into channel "
                    f"'{self.channel_name}'"
                )
                raise ChannelFlushError(msg) from exc
            elapsed_ms = (time.monotonic() - t0) * 1000

            if committed == NO_OFFSET:
                committed = last_offset
            if committed > self._offset_persisted:
                self._offset_persisted = committed
            self._buffer.drain()
            self._previous_flush_time = self._clock()

            logger.info(
                "channel.flushed",
                channel=self.channel_name,
                rows=len(rows),
                offset_persisted=self._offset_persisted,
                latency_ms=round(elapsed_ms, 2),
            )

    # -- Offsets ---------------------------------------------------------------

    @property
    def offset_persisted(self) -> int:
        return self._offset_persisted

    @property
    def offset_safe_to_commit(self) -> int:
        if self._offset_persisted == NO_OFFSET:
            return 0
        return self._offset_persisted + 1

    def get_offset_safe_to_commit_to_kafka(self) -> int:
        return self.offset_safe_to_commit

    # -- Lifecycle -------------------------------------------------------------

    def is_channel_closed(self) -> bool:
        return self._closed or self._channel.is_closed()

    async def close_channel(self) -> None:
        """Close the external channel without flushing; errors are only logged."""
        async with self._lock:
            self._closed = True
            loop = asyncio.get_running_loop()
            try:
                await loop.run_in_executor(None, self._channel.close)
            except Exception as exc:
                logger.error(
                    "channel.close_failed", channel=self.channel_name, error=str(exc)
                )
                return
        logger.info(
            "channel.closed",
            channel=self.channel_name,
            dropped_records=self._buffer.num_records,
        )

    def __repr__(self) -> str:
        return (
            f"TopicPartitionChannel(name={self.channel_name!r}, "
            f"table={self._table_name!r}, offset_persisted={self._offset_persisted})"
        )
