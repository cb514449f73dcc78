"""Protocols for the external ingestion service.

The sink service never speaks a wire protocol itself. Backends implement
these protocols (usually as thin wrappers around a vendor SDK) to plug into
the core without modifying it. All methods are synchronous; the core runs the
slow ones in an executor.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class IngestChannel(Protocol):
    """One partition's session against a destination table."""

    @property
    def name(self) -> str:
        """Channel name, unique per destination table."""
        ...

    def insert_rows(self, rows: list[dict[str, Any]], offset_token: str) -> str | None:
        """Append and commit *rows*; return the offset token now committed."""
        ...

    def get_latest_committed_offset_token(self) -> str | None:
        """Offset token persisted by the service, or None if nothing was committed."""
        ...

    def is_closed(self) -> bool:
        """True once the session was closed or invalidated by a newer open."""
        ...

    def close(self) -> None: ...


@runtime_checkable
class IngestClient(Protocol):
    """Connection to the ingestion service, shared by every channel of a task."""

    @property
    def name(self) -> str: ...

    def is_closed(self) -> bool: ...

    def open_channel(
        self,
        name: str,
        database: str,
        schema_name: str,
        table_name: str,
    ) -> IngestChannel:
        """Open (or reopen) a channel; reopening invalidates older handles."""
        ...

    def close(self) -> None: ...


@runtime_checkable
class TableService(Protocol):
    """Destination table checks used before a channel is opened."""

    def table_exists(self, table_name: str) -> bool: ...

    def is_table_compatible(self, table_name: str) -> bool: ...

    def create_table(self, table_name: str) -> None: ...


ClientFactory = Callable[[str, dict[str, str]], IngestClient]


@runtime_checkable
class IngestionBackend(Protocol):
    """Everything the sink service needs from one ingestion service."""

    @property
    def tables(self) -> TableService: ...

    def create_client(self, name: str, properties: dict[str, str]) -> IngestClient:
        """Build a new client; raise on failure (the caller treats it as fatal)."""
        ...
