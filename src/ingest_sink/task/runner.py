"""Sink task: Kafka consumer → sink service → ingestion channels."""

from __future__ import annotations

import asyncio
from contextlib import suppress

import structlog

from ingest_sink.config.models import SinkTaskConfig
from ingest_sink.ingestion.factory import build_sink_service
from ingest_sink.naming import table_name
from ingest_sink.records import SinkRecord
from ingest_sink.service.sink_service import SinkService
from ingest_sink.task.consumer import SinkConsumer

logger = structlog.get_logger()


class SinkTask:
    """Runs one sink task until the consumer stops or a fatal error escapes.

    Offsets are committed upstream only from ``SinkService.get_offset``, i.e.
    only once the ingestion service has acknowledged the rows. A periodic
    timer flushes idle partitions and commits; rebalance callbacks open and
    close channels.
    """

    def __init__(
        self,
        config: SinkTaskConfig,
        service: SinkService | None = None,
    ) -> None:
        self._config = config
        self._service = service
        self._consumer: SinkConsumer | None = None
        if service is not None:
            service.set_rewind_callback(self.rewind)
        self._assigned: set[tuple[str, int]] = set()
        # Partitions inside the assign callback; their start position is
        # returned to the consumer instead of sought.
        self._assigning: set[tuple[str, int]] = set()
        self._last_committed: dict[tuple[str, int], int] = {}
        self._flush_task: asyncio.Task[None] | None = None
        self._failure: BaseException | None = None

    @property
    def service(self) -> SinkService:
        if self._service is None:
            self._service = build_sink_service(self._config.ingestion)
            self._service.set_rewind_callback(self.rewind)
        return self._service

    def start(self) -> None:
        """Run the task (blocking)."""
        asyncio.run(self._start_async())

    async def _start_async(self) -> None:
        service = self.service
        self._consumer = SinkConsumer(
            topics=self._config.kafka.topics,
            kafka_config=self._config.kafka,
            handler=self.put,
            on_assign=self.open_partitions,
            on_revoke=self.close_partitions,
        )
        self._flush_task = asyncio.create_task(self._periodic_flush_loop())
        logger.info(
            "sink_task.started",
            client=service.client.name,
            topics=self._config.kafka.topics,
        )
        try:
            await self._consumer.consume()
        finally:
            await self._shutdown()
        if self._failure is not None:
            raise self._failure

    # -- Host callbacks ------------------------------------------------------------

    async def put(self, records: list[SinkRecord]) -> None:
        await self.service.insert(records)

    async def open_partitions(
        self, partitions: list[tuple[str, int]]
    ) -> dict[tuple[str, int], int]:
        """Open a channel per partition; return where each should resume from."""
        service = self.service
        self._assigning.update(partitions)
        try:
            for topic, partition in partitions:
                table = table_name(topic, self._config.ingestion.topic_to_table)
                await service.start_task(table, (topic, partition))
                self._assigned.add((topic, partition))
        finally:
            self._assigning.difference_update(partitions)
        return {tp: service.get_offset(tp) for tp in partitions}

    async def close_partitions(
        self, partitions: list[tuple[str, int]]
    ) -> dict[tuple[str, int], int]:
        """Close channels for revoked partitions; return their final safe offsets."""
        offsets = self.pre_commit(partitions)
        await self.service.close(partitions)
        self._assigned.difference_update(partitions)
        for tp in partitions:
            self._last_committed.pop(tp, None)
        return offsets

    def rewind(self, topic_partition: tuple[str, int], offset: int) -> None:
        """Seek a partition whose channel was reopened outside a rebalance."""
        if self._consumer is None or topic_partition in self._assigning:
            return
        self._consumer.seek(topic_partition, offset)

    def pre_commit(
        self, partitions: list[tuple[str, int]] | None = None
    ) -> dict[tuple[str, int], int]:
        """Offsets safe to commit; partitions still reporting 0 are left out."""
        service = self.service
        targets = self._assigned if partitions is None else partitions
        offsets: dict[tuple[str, int], int] = {}
        for tp in targets:
            offset = service.get_offset(tp)
            if offset != 0:
                offsets[tp] = offset
        return offsets

    def commit(self) -> None:
        if self._consumer is None:
            return
        to_commit = {
            tp: offset
            for tp, offset in self.pre_commit().items()
            if offset > self._last_committed.get(tp, 0)
        }
        if not to_commit:
            return
        self._consumer.commit_offsets(to_commit)
        self._last_committed.update(to_commit)

    # -- Timer / shutdown ----------------------------------------------------------

    async def _periodic_flush_loop(self) -> None:
        """Time-based flush for partitions that stopped receiving records."""
        interval = self._config.kafka.commit_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                await self.service.flush_expired()
                self.commit()
            except Exception as exc:
                logger.exception("sink_task.periodic_flush_failed")
                self._failure = exc
                self.stop()
                return

    async def _shutdown(self) -> None:
        if self._flush_task is not None:
            self._flush_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._flush_task
            self._flush_task = None
        await self.service.close_all()
        self._assigned.clear()
        logger.info("sink_task.stopped")

    def stop(self) -> None:
        """Signal the task to stop."""
        if self._consumer is not None:
            self._consumer.stop()
