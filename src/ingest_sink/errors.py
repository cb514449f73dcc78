"""Fatal error types raised by the sink service.

Everything here is unrecoverable from the task's point of view: the host is
expected to fail the task and let its runtime restart it. Recovery relies on
the offset token the ingestion service persisted for each channel.
"""

from __future__ import annotations


class IngestSinkError(Exception):
    """Base class for sink service failures."""


class IncompatibleTableError(IngestSinkError):
    """Raised when a destination table exists but cannot accept sink rows."""


class ClientCreationError(IngestSinkError):
    """Raised when the ingestion client factory fails."""


class ChannelOpenError(IngestSinkError):
    """Raised when an ingestion channel cannot be opened for a partition."""


class ChannelFlushError(IngestSinkError):
    """Raised when buffered rows could not be appended to an ingestion channel."""
