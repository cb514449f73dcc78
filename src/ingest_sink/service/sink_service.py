"""Per-task sink service: partition → channel registry, routing, flushing.

A task may be assigned many partitions. The host calls:

- ``start_task`` when a partition is assigned,
- ``insert`` for every polled batch,
- ``get_offset`` when it is about to commit offsets upstream,
- ``close`` when partitions are revoked (rebalance),
- ``close_all`` when the task stops.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Iterable

import structlog

from ingest_sink.config.models import IngestionConfig, NullValueBehavior
from ingest_sink.errors import IncompatibleTableError
from ingest_sink.ingestion.base import ClientFactory, TableService
from ingest_sink.naming import client_name, partition_channel_key, table_name
from ingest_sink.records import SinkRecord, should_skip_null_value
from ingest_sink.service.buffer import NO_OFFSET
from ingest_sink.service.channel import TopicPartitionChannel
from ingest_sink.service.client import IngestClientHandle
from ingest_sink.service.thresholds import FlushThresholds

logger = structlog.get_logger()

# Asks the host to resume consuming a partition from the given offset.
RewindCallback = Callable[[tuple[str, int], int], None]


class SinkService:
    """Keeps exactly one live ingestion channel per assigned partition.

    Channels share one ingestion client, owned by :class:`IngestClientHandle`.
    Structural changes to the registry are serialised by a single lock; buffer
    mutation and flushing are serialised per channel, so a slow flush on one
    partition never holds up another.
    """

    def __init__(
        self,
        config: IngestionConfig,
        table_service: TableService,
        client_factory: ClientFactory,
        *,
        clock: Callable[[], float] = time.monotonic,
        on_rewind: RewindCallback | None = None,
    ) -> None:
        self._config = config
        self._on_rewind = on_rewind
        self._tables = table_service
        self._clock = clock
        self._database = config.database
        self._schema_name = config.schema_name
        self._topic_to_table: dict[str, str] = dict(config.topic_to_table)
        self._behavior_on_null_values = config.behavior_on_null_values
        self._thresholds = FlushThresholds.from_config(config.buffer)
        self._channels: dict[str, TopicPartitionChannel] = {}
        self._registry_lock = asyncio.Lock()
        self._client = IngestClientHandle(
            client_name(config.connector_name, config.task_id),
            client_factory,
            config.client_properties,
        )
        self._client.open()

    @property
    def client(self) -> IngestClientHandle:
        return self._client

    # -- Task lifecycle ----------------------------------------------------------

    async def start_task(self, table: str, topic_partition: tuple[str, int]) -> None:
        """Ensure *table* exists and open a fresh channel for the partition."""
        async with self._registry_lock:
            await self._start_task_locked(table, topic_partition)

    async def _start_task_locked(
        self, table: str, topic_partition: tuple[str, int]
    ) -> TopicPartitionChannel:
        await self._create_table_if_not_exists(table)

        topic, partition = topic_partition
        key = partition_channel_key(topic, partition)
        stale = self._channels.pop(key, None)
        unflushed_from: int | None = None
        if stale is not None:
            if not stale.streaming_buffer.is_empty():
                unflushed_from = stale.streaming_buffer.first_offset
            logger.info(
                "sink_service.replacing_channel",
                channel=key,
                was_closed=stale.is_channel_closed(),
                dropped_records=stale.streaming_buffer.num_records,
            )
            await stale.close_channel()

        loop = asyncio.get_running_loop()
        client = await loop.run_in_executor(None, self._client.ensure_open)
        channel = await TopicPartitionChannel.open(
            client,
            topic_partition,
            key,
            database=self._database,
            schema_name=self._schema_name,
            table_name=table,
            retry=self._config.retry,
            clock=self._clock,
        )
        self._channels[key] = channel
        logger.info(
            "sink_service.channel_created",
            channel=key,
            table=table,
            offset_safe_to_commit=channel.offset_safe_to_commit,
        )

        # Resume right after the committed token, or from the first row the
        # replaced channel never flushed.
        if channel.offset_persisted != NO_OFFSET:
            resume_from: int | None = channel.offset_safe_to_commit
        else:
            resume_from = unflushed_from
        if resume_from is not None:
            channel.rewind_to(resume_from)
            if self._on_rewind is not None:
                self._on_rewind(topic_partition, resume_from)
        return channel

    async def _create_table_if_not_exists(self, table: str) -> None:
        loop = asyncio.get_running_loop()
        if await loop.run_in_executor(None, self._tables.table_exists, table):
            compatible = await loop.run_in_executor(
                None, self._tables.is_table_compatible, table
            )
            if not compatible:
                msg = f"Table '{table}' exists but is not compatible with the sink"
                raise IncompatibleTableError(msg)
            logger.info("sink_service.using_existing_table", table=table)
        else:
            logger.info("sink_service.creating_table", table=table)
            await loop.run_in_executor(None, self._tables.create_table, table)

    async def close_all(self) -> None:
        """Close every channel (no flush), forget them, then close the client."""
        async with self._registry_lock:
            for key, channel in self._channels.items():
                logger.info("sink_service.closing_channel", channel=key)
                await channel.close_channel()
            self._channels.clear()
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._client.close)

    async def close(self, partitions: Iterable[tuple[str, int]]) -> None:
        """Rebalance close: close the listed channels, keep the client.

        The whole registry is cleared, not just the listed keys, so a later
        assignment always reopens channels and re-reads committed offset
        tokens from the ingestion service.
        """
        async with self._registry_lock:
            for topic, partition in partitions:
                key = partition_channel_key(topic, partition)
                channel = self._channels.get(key)
                if channel is None:
                    logger.warning(
                        "sink_service.close_unknown_partition",
                        topic=topic,
                        partition=partition,
                    )
                    continue
                await channel.close_channel()
                logger.info(
                    "sink_service.partition_closed",
                    channel=channel.channel_name,
                    topic=topic,
                    partition=partition,
                )
            self._channels.clear()

    # -- Insert / flush --------------------------------------------------------

    async def insert(self, records: Iterable[SinkRecord]) -> None:
        """Buffer a batch; size/count flushes happen per record, time flushes once after."""
        for record in records:
            if should_skip_null_value(record, self._behavior_on_null_values):
                continue
            await self.insert_record(record)
        await self.flush_expired()

    async def insert_record(self, record: SinkRecord) -> None:
        channel = await self._resolve_channel(record)
        await channel.insert_record_to_buffer(record)

        thresholds = self._thresholds
        if thresholds.buffer_full(channel.streaming_buffer):
            logger.info(
                "sink_service.buffer_flush",
                channel=channel.channel_name,
                records=channel.streaming_buffer.num_records,
                bytes=channel.streaming_buffer.buffer_size,
            )
            await channel.insert_buffered_rows()

    async def flush_expired(self) -> None:
        """Flush every open channel whose last flush is older than the time threshold."""
        thresholds = self._thresholds
        for channel in list(self._channels.values()):
            if channel.is_channel_closed():
                continue
            now = self._clock()
            if thresholds.flush_due(channel.previous_flush_time, now):
                logger.info(
                    "sink_service.time_based_flush",
                    channel=channel.channel_name,
                    elapsed_seconds=round(now - channel.previous_flush_time, 3),
                    threshold_seconds=thresholds.flush_time_seconds,
                )
                await channel.insert_buffered_rows()

    async def _resolve_channel(self, record: SinkRecord) -> TopicPartitionChannel:
        key = partition_channel_key(record.topic, record.partition)
        channel = self._channels.get(key)
        if channel is not None and not channel.is_channel_closed():
            return channel

        async with self._registry_lock:
            channel = self._channels.get(key)
            if channel is not None and not channel.is_channel_closed():
                return channel
            logger.warning(
                "sink_service.partition_not_initialized",
                topic=record.topic,
                partition=record.partition,
            )
            return await self._start_task_locked(
                table_name(record.topic, self._topic_to_table), record.topic_partition
            )

    # -- Offsets ---------------------------------------------------------------

    def get_offset(self, topic_partition: tuple[str, int]) -> int:
        """Offset safe to commit upstream, or 0 if the partition has no channel."""
        topic, partition = topic_partition
        channel = self._channels.get(partition_channel_key(topic, partition))
        if channel is None:
            logger.warning(
                "sink_service.offset_for_unknown_partition",
                topic=topic,
                partition=partition,
            )
            return 0
        return channel.offset_safe_to_commit

    def get_partition_count(self) -> int:
        return len(self._channels)

    def get_channel(self, key: str) -> TopicPartitionChannel | None:
        return self._channels.get(key)

    # -- Settings --------------------------------------------------------------

    @property
    def thresholds(self) -> FlushThresholds:
        return self._thresholds

    def set_record_number(self, num: int) -> None:
        self._thresholds = self._thresholds.with_record_count(num)

    def set_file_size(self, size: int) -> None:
        self._thresholds = self._thresholds.with_size_bytes(size)

    def set_flush_time(self, seconds: int) -> None:
        self._thresholds = self._thresholds.with_flush_time(seconds)

    def get_record_number(self) -> int:
        return self._thresholds.record_count

    def get_file_size(self) -> int:
        return self._thresholds.size_bytes

    def get_flush_time(self) -> int:
        return self._thresholds.flush_time_seconds

    def set_rewind_callback(self, callback: RewindCallback | None) -> None:
        self._on_rewind = callback

    def set_topic_to_table_map(self, topic_to_table: dict[str, str]) -> None:
        self._topic_to_table = dict(topic_to_table)

    def set_behavior_on_null_values(self, behavior: NullValueBehavior) -> None:
        self._behavior_on_null_values = behavior

    def get_behavior_on_null_values(self) -> NullValueBehavior:
        return self._behavior_on_null_values
