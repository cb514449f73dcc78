"""Kafka consumer feeding sink records to the task, with manual commits."""

from __future__ import annotations

import asyncio
import json
import signal
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any

import structlog
from confluent_kafka import (
    Consumer,
    KafkaError,
    KafkaException,
    Message,
    TopicPartition,
)

from ingest_sink.config.models import KafkaConfig, ValueFormat
from ingest_sink.records import SinkRecord

logger = structlog.get_logger()

BatchHandler = Callable[[list[SinkRecord]], Awaitable[None]]
Offsets = dict[tuple[str, int], int]
# Assign returns the position to start each partition from (0 = use Kafka's).
AssignCallback = Callable[[list[tuple[str, int]]], Coroutine[Any, Any, Offsets]]
# Revoke returns the offsets to commit before the partitions go away.
RevokeCallback = Callable[[list[tuple[str, int]]], Coroutine[Any, Any, Offsets]]


class SinkConsumer:
    """Batch-polling consumer; rebalance callbacks run on the task's event loop.

    confluent-kafka invokes rebalance callbacks from inside ``consume()``,
    which runs in an executor thread. The callbacks hand the work to the event
    loop and block until it finishes, so partitions are never handed over
    while their channels are still being opened or closed.
    """

    def __init__(
        self,
        topics: list[str],
        kafka_config: KafkaConfig,
        handler: BatchHandler,
        *,
        on_assign: AssignCallback | None = None,
        on_revoke: RevokeCallback | None = None,
    ) -> None:
        self._topics = topics
        self._kafka_config = kafka_config
        self._handler = handler
        self._on_assign = on_assign
        self._on_revoke = on_revoke
        self._running = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._closed = False
        self._value_format = kafka_config.value_format

        self._key_deser: Any = None
        self._value_deser: Any = None
        if self._value_format == ValueFormat.AVRO:
            from confluent_kafka.schema_registry import SchemaRegistryClient
            from confluent_kafka.schema_registry.avro import AvroDeserializer

            registry = SchemaRegistryClient({"url": kafka_config.schema_registry_url})
            self._key_deser = AvroDeserializer(registry)
            self._value_deser = AvroDeserializer(registry)

        self._consumer = Consumer(
            {
                "bootstrap.servers": kafka_config.bootstrap_servers,
                "group.id": kafka_config.group_id,
                "auto.offset.reset": kafka_config.auto_offset_reset,
                "enable.auto.commit": False,
                "session.timeout.ms": kafka_config.session_timeout_ms,
                "max.poll.interval.ms": kafka_config.max_poll_interval_ms,
                "fetch.min.bytes": kafka_config.fetch_min_bytes,
                "fetch.wait.max.ms": kafka_config.fetch_max_wait_ms,
            }
        )

    # -- Deserialization -------------------------------------------------------

    def _decode(self, data: bytes | None, topic: str, is_key: bool) -> Any:
        if data is None:
            return None
        if self._value_format == ValueFormat.AVRO:
            from confluent_kafka.serialization import MessageField, SerializationContext

            field = MessageField.KEY if is_key else MessageField.VALUE
            deser = self._key_deser if is_key else self._value_deser
            return deser(data, SerializationContext(topic, field))
        text = data.decode("utf-8")
        if self._value_format == ValueFormat.JSON and not is_key:
            return json.loads(text)
        return text

    def to_record(self, msg: Message) -> SinkRecord:
        topic = msg.topic()
        partition = msg.partition()
        offset = msg.offset()
        assert topic is not None
        assert partition is not None
        assert offset is not None

        headers: dict[str, str] = {}
        for name, raw in msg.headers() or []:
            headers[name] = raw.decode("utf-8", errors="replace") if raw else ""

        _ts_type, ts = msg.timestamp()
        return SinkRecord(
            topic=topic,
            partition=partition,
            offset=offset,
            key=self._decode(msg.key(), topic, is_key=True),
            value=self._decode(msg.value(), topic, is_key=False),
            timestamp=ts if ts and ts > 0 else None,
            headers=headers,
        )

    # -- Rebalance -------------------------------------------------------------

    def _run_on_loop(self, coro: Coroutine[Any, Any, Offsets]) -> Offsets:
        assert self._loop is not None
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        return future.result()

    def _handle_assign(self, consumer: Any, partitions: list[Any]) -> None:
        tps = [(tp.topic, tp.partition) for tp in partitions]
        positions: dict[tuple[str, int], int] = {}
        if self._on_assign and self._loop:
            positions = self._run_on_loop(self._on_assign(tps)) or {}
        for tp in partitions:
            position = positions.get((tp.topic, tp.partition), 0)
            if position > 0:
                tp.offset = position
        consumer.assign(partitions)
        logger.info("consumer.partitions_assigned", partitions=tps, positions=positions)

    def _handle_revoke(self, consumer: Any, partitions: list[Any]) -> None:
        tps = [(tp.topic, tp.partition) for tp in partitions]
        if self._on_revoke and self._loop:
            offsets = self._run_on_loop(self._on_revoke(tps)) or {}
            self.commit_offsets(offsets)
        logger.info("consumer.partitions_revoked", partitions=tps)

    # -- Consume loop ----------------------------------------------------------

    async def consume(self) -> None:
        """Poll batches in a thread and await the handler for each one."""
        self._running = True
        self._loop = asyncio.get_running_loop()
        self._consumer.subscribe(
            self._topics,
            on_assign=self._handle_assign,
            on_revoke=self._handle_revoke,
        )
        self._install_signal_handlers()

        batch_size = self._kafka_config.poll_batch_size
        timeout = self._kafka_config.poll_timeout_seconds
        logger.info("consumer.started", topics=self._topics)
        try:
            while self._running:
                messages = await self._loop.run_in_executor(
                    None, self._consumer.consume, batch_size, timeout
                )
                if not messages:
                    continue

                records: list[SinkRecord] = []
                for msg in messages:
                    err = msg.error()
                    if err and err.code() == KafkaError._PARTITION_EOF:  # type: ignore[attr-defined]
                        continue
                    if err:
                        raise KafkaException(err)
                    records.append(self.to_record(msg))

                if records:
                    await self._handler(records)
        finally:
            # close() fires the revoke callback, which needs the loop to be free.
            await self._loop.run_in_executor(None, self._consumer.close)
            self._closed = True
            logger.info("consumer.stopped")

    def _install_signal_handlers(self) -> None:
        def _shutdown(signum: int, frame: Any) -> None:
            logger.info("consumer.shutdown_signal", signal=signum)
            self._running = False

        signal.signal(signal.SIGINT, _shutdown)
        signal.signal(signal.SIGTERM, _shutdown)

    def commit_offsets(self, offsets: dict[tuple[str, int], int]) -> None:
        """Commit next-to-fetch offsets; zero means "nothing safe yet" and is skipped."""
        if self._closed:
            return
        topic_partitions = [
            TopicPartition(topic, partition, offset)
            for (topic, partition), offset in offsets.items()
            if offset > 0
        ]
        if topic_partitions:
            self._consumer.commit(offsets=topic_partitions, asynchronous=False)
            logger.debug("consumer.offsets_committed", count=len(topic_partitions))

    def seek(self, topic_partition: tuple[str, int], offset: int) -> None:
        """Move an assigned partition's fetch position back to *offset*."""
        if self._closed:
            return
        topic, partition = topic_partition
        self._consumer.seek(TopicPartition(topic, partition, offset))
        logger.info(
            "consumer.seek", topic=topic, partition=partition, offset=offset
        )

    def stop(self) -> None:
        """Signal the consume loop to stop."""
        self._running = False
