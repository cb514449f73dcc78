"""Shared fixtures for sink service unit tests."""

from __future__ import annotations

import pytest

from ingest_sink.config.models import BufferConfig, IngestionConfig, RetryConfig
from ingest_sink.ingestion.memory import MemoryIngestionBackend
from ingest_sink.service.sink_service import SinkService


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def backend() -> MemoryIngestionBackend:
    return MemoryIngestionBackend()


@pytest.fixture
def ingestion_config() -> IngestionConfig:
    return IngestionConfig(
        connector_name="test_connector",
        task_id="0",
        database="TEST_DB",
        schema_name="PUBLIC",
        buffer=BufferConfig(
            size_bytes=5_000_000, count_records=10, flush_time_seconds=60
        ),
        retry=RetryConfig(
            max_attempts=2, initial_wait_seconds=0.01, max_wait_seconds=0.02
        ),
    )


@pytest.fixture
def service(
    ingestion_config: IngestionConfig,
    backend: MemoryIngestionBackend,
    clock: FakeClock,
) -> SinkService:
    return SinkService(
        ingestion_config, backend.tables, backend.create_client, clock=clock
    )
