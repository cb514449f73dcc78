"""Pydantic configuration models for sink tasks."""

from __future__ import annotations

import re
from enum import StrEnum
from typing import Self

from pydantic import BaseModel, Field, field_validator, model_validator

# Buffer thresholds. Out-of-range values are clamped by the sink service, not
# rejected here, so the models below deliberately carry no range constraints.
BUFFER_SIZE_BYTES_DEFAULT = 5_000_000
BUFFER_SIZE_BYTES_MIN = 1
BUFFER_COUNT_RECORDS_DEFAULT = 10_000
BUFFER_FLUSH_TIME_SEC_DEFAULT = 120
BUFFER_FLUSH_TIME_SEC_MIN = 10

_IDENTIFIER = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_$]*$")


class NullValueBehavior(StrEnum):
    """What to do with records whose value is null (tombstones)."""

    DEFAULT = "default"
    IGNORE = "ignore"


class ValueFormat(StrEnum):
    """Wire format of consumed message values."""

    JSON = "json"
    STRING = "string"
    AVRO = "avro"


class BufferConfig(BaseModel):
    """Per-partition flush thresholds."""

    size_bytes: int = BUFFER_SIZE_BYTES_DEFAULT
    # 0 disables count-based flushing.
    count_records: int = BUFFER_COUNT_RECORDS_DEFAULT
    flush_time_seconds: int = BUFFER_FLUSH_TIME_SEC_DEFAULT


class RetryConfig(BaseModel):
    """Retry / backoff for fetching a channel's committed offset token."""

    max_attempts: int = Field(default=5, ge=1)
    initial_wait_seconds: float = Field(default=1.0, gt=0)
    max_wait_seconds: float = Field(default=30.0, gt=0)
    jitter: bool = True


class IngestionConfig(BaseModel):
    """Destination and ingestion client settings for one task."""

    connector_name: str = Field(min_length=1)
    task_id: str = "-1"
    database: str
    schema_name: str
    # "memory" or an import path ("package.module:attribute") to a callable
    # returning an IngestionBackend.
    backend: str = "memory"
    client_properties: dict[str, str] = Field(default_factory=dict)
    topic_to_table: dict[str, str] = Field(default_factory=dict)
    behavior_on_null_values: NullValueBehavior = NullValueBehavior.DEFAULT
    buffer: BufferConfig = BufferConfig()
    retry: RetryConfig = RetryConfig()

    @field_validator("topic_to_table")
    @classmethod
    def validate_table_names(cls, v: dict[str, str]) -> dict[str, str]:
        for topic, table in v.items():
            if not _IDENTIFIER.match(table):
                msg = f"Table name '{table}' for topic '{topic}' is not a valid identifier"
                raise ValueError(msg)
        return v


class KafkaConfig(BaseModel):
    """Kafka consumer settings for the host task."""

    bootstrap_servers: str = "localhost:9092"
    group_id: str = "ingest-sink"
    topics: list[str] = Field(default_factory=list)
    auto_offset_reset: str = "earliest"
    session_timeout_ms: int = Field(default=45000, ge=1000)
    max_poll_interval_ms: int = Field(default=300000, ge=1000)
    fetch_min_bytes: int = Field(default=1, ge=1)
    fetch_max_wait_ms: int = Field(default=500, ge=0)
    poll_batch_size: int = Field(default=500, ge=1)
    poll_timeout_seconds: float = Field(default=1.0, gt=0)
    value_format: ValueFormat = ValueFormat.JSON
    schema_registry_url: str | None = None
    # Interval of the flush sweep + offset commit timer.
    commit_interval_seconds: float = Field(default=10.0, gt=0)

    @model_validator(mode="after")
    def check_avro_requirements(self) -> Self:
        if self.value_format == ValueFormat.AVRO and not self.schema_registry_url:
            msg = "schema_registry_url is required when value_format is 'avro'"
            raise ValueError(msg)
        return self


class SinkTaskConfig(BaseModel, extra="forbid"):
    """Top-level configuration for one sink task."""

    ingestion: IngestionConfig
    kafka: KafkaConfig = KafkaConfig()
    log_level: str = "INFO"
    log_json: bool = True

    @model_validator(mode="after")
    def check_topics(self) -> Self:
        if not self.kafka.topics:
            msg = "kafka.topics must list at least one topic"
            raise ValueError(msg)
        return self
