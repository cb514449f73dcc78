"""Sink record envelope and row conversion."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from ingest_sink.config.models import NullValueBehavior


@dataclass(slots=True)
class SinkRecord:
    """A single upstream record, already deserialized by the host.

    The host converts every consumed message into this dataclass before
    handing it to the sink service.
    """

    topic: str
    partition: int
    offset: int
    key: Any = None
    value: Any = None
    timestamp: int | None = None  # epoch millis from the source message
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def topic_partition(self) -> tuple[str, int]:
        return (self.topic, self.partition)


def should_skip_null_value(record: SinkRecord, behavior: NullValueBehavior) -> bool:
    """Tombstones are dropped only when the task is configured to ignore them."""
    return behavior == NullValueBehavior.IGNORE and record.value is None


def to_row(record: SinkRecord) -> dict[str, Any]:
    """Convert a record into the row shape handed to the ingestion channel."""
    metadata: dict[str, Any] = {
        "topic": record.topic,
        "partition": record.partition,
        "offset": record.offset,
    }
    if record.key is not None:
        metadata["key"] = record.key
    if record.timestamp is not None:
        metadata["create_time"] = record.timestamp
    if record.headers:
        metadata["headers"] = dict(record.headers)
    return {"record_metadata": metadata, "record_content": record.value}


def estimate_row_size(row: dict[str, Any]) -> int:
    """Approximate serialized size of *row* in bytes (UTF-8 JSON)."""
    return len(json.dumps(row, default=str, separators=(",", ":")).encode())
