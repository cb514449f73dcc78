"""Backend factory: maps a backend reference to an IngestionBackend."""

from __future__ import annotations

import importlib
from collections.abc import Callable
from typing import TYPE_CHECKING

from ingest_sink.config.models import IngestionConfig
from ingest_sink.ingestion.base import IngestionBackend
from ingest_sink.ingestion.memory import MemoryIngestionBackend

if TYPE_CHECKING:
    from ingest_sink.service.sink_service import SinkService

_BACKEND_REGISTRY: dict[str, Callable[[], IngestionBackend]] = {
    "memory": MemoryIngestionBackend,
}


def create_backend(reference: str) -> IngestionBackend:
    """Create an ingestion backend from a registry name or ``module:attribute`` path.

    The attribute must be a zero-argument callable (usually a class) that
    returns an object satisfying :class:`IngestionBackend`.
    """
    factory = _BACKEND_REGISTRY.get(reference)
    if factory is None:
        module_name, sep, attr = reference.partition(":")
        if not sep or not module_name or not attr:
            msg = (
                f"Unknown ingestion backend: {reference!r} "
                "(expected a registered name or 'module:attribute')"
            )
            raise ValueError(msg)
        module = importlib.import_module(module_name)
        factory = getattr(module, attr)

    backend = factory()
    if not isinstance(backend, IngestionBackend):
        msg = f"Backend {reference!r} does not implement IngestionBackend"
        raise TypeError(msg)
    return backend


def build_sink_service(
    config: IngestionConfig,
    backend: IngestionBackend | None = None,
) -> SinkService:
    """Wire a SinkService to the backend named in *config*."""
    from ingest_sink.service.sink_service import SinkService

    backend = backend or create_backend(config.backend)
    return SinkService(config, backend.tables, backend.create_client)
