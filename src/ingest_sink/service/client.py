"""Lifecycle of the ingestion client shared by every channel of a task."""

from __future__ import annotations

import threading
from enum import StrEnum

import structlog

from ingest_sink.errors import ClientCreationError
from ingest_sink.ingestion.base import ClientFactory, IngestClient

logger = structlog.get_logger()


class ClientState(StrEnum):
    UNINITIALIZED = "uninitialized"
    OPEN = "open"
    CLOSED = "closed"


class IngestClientHandle:
    """Owns the task's ingestion client and recreates it when found closed.

    ``ensure_open`` is the only way channel creation obtains a client. The
    check and the recreation happen under one lock, so two partitions that
    notice a dead client at the same time build exactly one replacement.
    """

    def __init__(
        self,
        name: str,
        factory: ClientFactory,
        properties: dict[str, str] | None = None,
    ) -> None:
        self._name = name
        self._factory = factory
        self._properties = dict(properties or {})
        self._client: IngestClient | None = None
        self._closed = False
        self._generation = 0
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return self._name

    @property
    def generation(self) -> int:
        """Number of clients built so far."""
        return self._generation

    @property
    def state(self) -> ClientState:
        if self._client is None:
            return ClientState.UNINITIALIZED
        if self._closed or self._client.is_closed():
            return ClientState.CLOSED
        return ClientState.OPEN

    def is_closed(self) -> bool:
        return self.state != ClientState.OPEN

    def open(self) -> IngestClient:
        """Build the client if there is no live one; alias of :meth:`ensure_open`."""
        return self.ensure_open()

    def ensure_open(self) -> IngestClient:
        """Return a live client, building a new one if the current one is closed."""
        with self._lock:
            if self._client is not None and self.state == ClientState.OPEN:
                return self._client

            previous = self.state
            logger.info(
                "ingest_client.initializing",
                client=self._name,
                previous_state=previous,
                generation=self._generation + 1,
            )
            try:
                client = self._factory(self._name, self._properties)
            except Exception as exc:
                logger.error(
                    "ingest_client.create_failed", client=self._name, error=str(exc)
                )
                msg = f"Failed to create ingestion client '{self._name}'"
                raise ClientCreationError(msg) from exc

            self._client = client
            self._closed = False
            self._generation += 1
            return client

    def close(self) -> None:
        """Close the client; failures are logged so shutdown always completes."""
        with self._lock:
            client = self._client
            self._closed = True
        if client is None:
            return
        logger.info("ingest_client.closing", client=self._name)
        try:
            client.close()
        except Exception as exc:
            logger.error(
                "ingest_client.close_failed",
                client=self._name,
                error=str(exc),
                cause=repr(exc.__cause__) if exc.__cause__ else None,
            )
