"""In-process ingestion backend.

Keeps destination tables, committed offset tokens and channel generations in
memory. It behaves like a real ingestion service where it matters to the
sink core: offset tokens survive channel reopen, and opening a channel with
the same name invalidates every older handle to it.
"""

from __future__ import annotations

import threading
from typing import Any

import structlog

logger = structlog.get_logger()


class MemoryTableService:
    """Table registry; ``compatible=False`` simulates a table of the wrong shape."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._compatible: dict[str, bool] = {}
        self.rows: dict[str, list[dict[str, Any]]] = {}

    def add_table(self, table_name: str, *, compatible: bool = True) -> None:
        with self._lock:
            self._compatible[table_name] = compatible
            self.rows.setdefault(table_name, [])

    def table_exists(self, table_name: str) -> bool:
        with self._lock:
            return table_name in self._compatible

    def is_table_compatible(self, table_name: str) -> bool:
        with self._lock:
            return self._compatible.get(table_name, False)

    def create_table(self, table_name: str) -> None:
        self.add_table(table_name)
        logger.info("memory_backend.table_created", table=table_name)

    def append(self, table_name: str, rows: list[dict[str, Any]]) -> None:
        with self._lock:
            if table_name not in self._compatible:
                msg = f"Table '{table_name}' does not exist"
                raise RuntimeError(msg)
            self.rows[table_name].extend(rows)


class MemoryIngestChannel:
    def __init__(
        self,
        backend: MemoryIngestionBackend,
        name: str,
        table_name: str,
        generation: int,
    ) -> None:
        self._backend = backend
        self._name = name
        self._table_name = table_name
        self._generation = generation
        self._closed = False

    @property
    def name(self) -> str:
        return self._name

    def insert_rows(self, rows: list[dict[str, Any]], offset_token: str) -> str | None:
        if self.is_closed():
            msg = f"Channel '{self._name}' is closed"
            raise RuntimeError(msg)
        self._backend.tables.append(self._table_name, rows)
        self._backend.commit_token(self._table_name, self._name, offset_token)
        return offset_token

    def get_latest_committed_offset_token(self) -> str | None:
        return self._backend.committed_token(self._table_name, self._name)

    def is_closed(self) -> bool:
        return self._closed or self._backend.channel_generation(
            self._table_name, self._name
        ) != self._generation

    def close(self) -> None:
        self._closed = True


class MemoryIngestClient:
    def __init__(
        self,
        backend: MemoryIngestionBackend,
        name: str,
        properties: dict[str, str],
    ) -> None:
        self._backend = backend
        self._name = name
        self.properties = dict(properties)
        self._closed = False

    @property
    def name(self) -> str:
        return self._name

    def is_closed(self) -> bool:
        return self._closed

    def open_channel(
        self,
        name: str,
        database: str,
        schema_name: str,
        table_name: str,
    ) -> MemoryIngestChannel:
        if self._closed:
            msg = f"Client '{self._name}' is closed"
            raise RuntimeError(msg)
        qualified = f"{database}.{schema_name}.{table_name}"
        generation = self._backend.bump_generation(table_name, name)
        logger.debug(
            "memory_backend.channel_opened",
            channel=name,
            table=qualified,
            generation=generation,
        )
        return MemoryIngestChannel(self._backend, name, table_name, generation)

    def close(self) -> None:
        self._closed = True


class MemoryIngestionBackend:
    """IngestionBackend implementation backed by plain dictionaries."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tables = MemoryTableService()
        self._tokens: dict[tuple[str, str], str] = {}
        self._generations: dict[tuple[str, str], int] = {}
        self.clients: list[MemoryIngestClient] = []

    @property
    def tables(self) -> MemoryTableService:
        return self._tables

    def create_client(self, name: str, properties: dict[str, str]) -> MemoryIngestClient:
        client = MemoryIngestClient(self, name, properties)
        self.clients.append(client)
        return client

    def bump_generation(self, table_name: str, channel_name: str) -> int:
        with self._lock:
            key = (table_name, channel_name)
            self._generations[key] = self._generations.get(key, 0) + 1
            return self._generations[key]

    def channel_generation(self, table_name: str, channel_name: str) -> int:
        with self._lock:
            return self._generations.get((table_name, channel_name), 0)

    def commit_token(self, table_name: str, channel_name: str, token: str) -> None:
        with self._lock:
            self._tokens[(table_name, channel_name)] = token

    def committed_token(self, table_name: str, channel_name: str) -> str | None:
        with self._lock:
            return self._tokens.get((table_name, channel_name))
