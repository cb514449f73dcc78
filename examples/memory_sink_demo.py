#!/usr/bin/env python3
"""Runnable demo: drive the sink service against the in-memory backend.

No Kafka needed:
    python examples/memory_sink_demo.py
"""

from __future__ import annotations

import asyncio

from rich.console import Console

from ingest_sink.config.models import BufferConfig, IngestionConfig
from ingest_sink.ingestion.factory import build_sink_service
from ingest_sink.ingestion.memory import MemoryIngestionBackend
from ingest_sink.log import configure_logging
from ingest_sink.records import SinkRecord

console = Console()


async def main() -> None:
    configure_logging(json_output=False)
    backend = MemoryIngestionBackend()
    service = build_sink_service(
        IngestionConfig(
            connector_name="demo",
            task_id="0",
            database="ANALYTICS",
            schema_name="RAW",
            buffer=BufferConfig(count_records=10, flush_time_seconds=60),
        ),
        backend,
    )

    # 1. Partition assignment opens a channel per partition
    await service.start_task("orders", ("orders", 0))
    await service.start_task("orders", ("orders", 1))

    # 2. Nine records on partition 0 stay buffered; the tenth flushes
    batch = [
        SinkRecord(topic="orders", partition=0, offset=i, value={"order_id": i})
        for i in range(10)
    ]
    await service.insert(batch[:9])
    console.print("after 9 records, offset =", service.get_offset(("orders", 0)))
    await service.insert(batch[9:])
    console.print("after 10 records, offset =", service.get_offset(("orders", 0)))

    # 3. Rebalance: channels close, committed tokens survive in the backend
    await service.close([("orders", 0), ("orders", 1)])
    await service.start_task("orders", ("orders", 0))
    console.print("after reopen, offset =", service.get_offset(("orders", 0)))

    await service.close_all()
    console.print(f"[green]rows in table:[/green] {len(backend.tables.rows['orders'])}")


if __name__ == "__main__":
    asyncio.run(main())
