"""Unit tests for SinkTask host callbacks and offset commits."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from ingest_sink.config.models import IngestionConfig, KafkaConfig, SinkTaskConfig
from ingest_sink.records import SinkRecord
from ingest_sink.task.runner import SinkTask

TP0 = ("orders", 0)
TP1 = ("orders", 1)


@pytest.fixture
def task_config(ingestion_config: IngestionConfig) -> SinkTaskConfig:
    return SinkTaskConfig(
        ingestion=ingestion_config,
        kafka=KafkaConfig(topics=["orders"], commit_interval_seconds=0.01),
    )


@pytest.fixture
def task(task_config, service) -> SinkTask:
    t = SinkTask(task_config, service=service)
    t._consumer = MagicMock()
    return t


def _records(start: int, stop: int, partition: int = 0) -> list[SinkRecord]:
    return [
        SinkRecord(topic="orders", partition=partition, offset=i, value={"i": i})
        for i in range(start, stop)
    ]


class TestOpenPartitions:
    async def test_opens_channels_and_returns_positions(self, task, service):
        positions = await task.open_partitions([TP0, TP1])

        assert positions == {TP0: 0, TP1: 0}
        assert service.get_partition_count() == 2

    async def test_returns_recovered_position(self, task, service):
        await task.open_partitions([TP0])
        await task.put(_records(0, 10))
        await task.close_partitions([TP0])

        positions = await task.open_partitions([TP0])

        assert positions == {TP0: 10}

    async def test_uses_topic_to_table_map(self, task_config, service, backend):
        task_config.ingestion.topic_to_table["orders"] = "ORDERS_TBL"
        task = SinkTask(task_config, service=service)

        await task.open_partitions([TP0])

        assert service.get_channel("orders_0").table_name == "ORDERS_TBL"
        assert backend.tables.table_exists("ORDERS_TBL")


class TestRewind:
    async def test_assignment_does_not_seek(self, task):
        await task.open_partitions([TP0])
        await task.put(_records(0, 10))
        await task.close_partitions([TP0])

        positions = await task.open_partitions([TP0])

        assert positions == {TP0: 10}
        task._consumer.seek.assert_not_called()

    async def test_reopen_on_insert_seeks_consumer(self, task, backend):
        await task.open_partitions([TP0])
        await task.put(_records(0, 5))

        other = backend.create_client("other", {})
        other.open_channel("orders_0", "TEST_DB", "PUBLIC", "orders")
        await task.put(_records(5, 8))

        task._consumer.seek.assert_called_once_with(TP0, 0)
        assert task.pre_commit() == {}

    def test_lazily_built_service_is_wired(self, task_config):
        task = SinkTask(task_config)
        task._consumer = MagicMock()

        task.service._on_rewind(TP0, 3)

        task._consumer.seek.assert_called_once_with(TP0, 3)


class TestPreCommit:
    async def test_only_nonzero_offsets_reported(self, task):
        await task.open_partitions([TP0, TP1])
        await task.put(_records(0, 10, partition=0))

        assert task.pre_commit() == {TP0: 10}

    async def test_explicit_partitions(self, task):
        await task.open_partitions([TP0, TP1])
        await task.put(_records(0, 10, partition=1))

        assert task.pre_commit([TP0]) == {}
        assert task.pre_commit([TP1]) == {TP1: 10}


class TestCommit:
    async def test_commits_only_advanced_offsets(self, task):
        await task.open_partitions([TP0])
        await task.put(_records(0, 10))

        task.commit()
        task.commit()

        task._consumer.commit_offsets.assert_called_once_with({TP0: 10})

        await task.put(_records(10, 20))
        task.commit()
        task._consumer.commit_offsets.assert_called_with({TP0: 20})

    async def test_nothing_to_commit(self, task):
        await task.open_partitions([TP0])
        task.commit()
        task._consumer.commit_offsets.assert_not_called()


class TestClosePartitions:
    async def test_returns_final_offsets_and_clears(self, task, service):
        await task.open_partitions([TP0, TP1])
        await task.put(_records(0, 10))

        offsets = await task.close_partitions([TP0])

        assert offsets == {TP0: 10}
        assert service.get_partition_count() == 0
        assert task.pre_commit() == {}


class TestLifecycle:
    async def test_shutdown_closes_everything(self, task, service):
        await task.open_partitions([TP0])

        await task._shutdown()

        assert service.get_partition_count() == 0
        assert service.client.is_closed()

    async def test_periodic_flush_failure_stops_task(self, task, service):
        service.flush_expired = AsyncMock(side_effect=RuntimeError("flush broke"))

        await asyncio.wait_for(task._periodic_flush_loop(), timeout=2)

        assert isinstance(task._failure, RuntimeError)
        task._consumer.stop.assert_called_once()

    def test_start_runs_consumer_and_shuts_down(self, task_config, service):
        task = SinkTask(task_config, service=service)
        with patch("ingest_sink.task.runner.SinkConsumer") as consumer_cls:
            consumer_cls.return_value.consume = AsyncMock()
            task.start()

        consumer_cls.return_value.consume.assert_awaited_once()
        kwargs = consumer_cls.call_args.kwargs
        assert kwargs["topics"] == ["orders"]
        assert kwargs["on_assign"] == task.open_partitions
        assert kwargs["on_revoke"] == task.close_partitions
        assert service.client.is_closed()

    def test_stop_without_consumer_is_noop(self, task_config, service):
        SinkTask(task_config, service=service).stop()
