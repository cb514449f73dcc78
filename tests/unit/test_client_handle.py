"""Unit tests for IngestClientHandle lifecycle."""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock

import pytest
from structlog.testing import capture_logs

from ingest_sink.errors import ClientCreationError
from ingest_sink.service.client import ClientState, IngestClientHandle


def _make_factory() -> MagicMock:
    def build(name, properties):
        client = MagicMock()
        client.name = name
        client.is_closed.return_value = False
        return client

    return MagicMock(side_effect=build)


class TestStates:
    def test_starts_uninitialized(self):
        handle = IngestClientHandle("KC_CLIENT_c_0", _make_factory())
        assert handle.state == ClientState.UNINITIALIZED
        assert handle.is_closed()
        assert handle.generation == 0

    def test_open_builds_client(self):
        factory = _make_factory()
        handle = IngestClientHandle("KC_CLIENT_c_0", factory, {"role": "loader"})

        client = handle.open()

        factory.assert_called_once_with("KC_CLIENT_c_0", {"role": "loader"})
        assert client.name == "KC_CLIENT_c_0"
        assert handle.state == ClientState.OPEN
        assert handle.generation == 1

    def test_ensure_open_is_idempotent_while_open(self):
        factory = _make_factory()
        handle = IngestClientHandle("c", factory)

        first = handle.ensure_open()
        second = handle.ensure_open()

        assert first is second
        assert factory.call_count == 1

    def test_close_then_reopen_builds_new_client(self):
        factory = _make_factory()
        handle = IngestClientHandle("c", factory)
        first = handle.open()

        handle.close()
        assert handle.state == ClientState.CLOSED
        first.close.assert_called_once()

        second = handle.ensure_open()
        assert second is not first
        assert handle.state == ClientState.OPEN
        assert handle.generation == 2

    def test_externally_closed_client_is_replaced(self):
        factory = _make_factory()
        handle = IngestClientHandle("c", factory)
        first = handle.open()
        first.is_closed.return_value = True

        assert handle.state == ClientState.CLOSED
        assert handle.ensure_open() is not first

    def test_close_before_open_is_noop(self):
        handle = IngestClientHandle("c", _make_factory())
        handle.close()
        assert handle.generation == 0


class TestFailures:
    def test_factory_failure_raises(self):
        factory = MagicMock(side_effect=PermissionError("bad key"))
        handle = IngestClientHandle("c", factory)

        with pytest.raises(ClientCreationError, match="'c'") as excinfo:
            handle.ensure_open()

        assert isinstance(excinfo.value.__cause__, PermissionError)
        assert handle.state == ClientState.UNINITIALIZED

    def test_close_failure_is_logged(self):
        factory = _make_factory()
        handle = IngestClientHandle("c", factory)
        client = handle.open()
        client.close.side_effect = RuntimeError("socket reset")

        with capture_logs() as logs:
            handle.close()

        assert handle.state == ClientState.CLOSED
        failures = [e for e in logs if e["event"] == "ingest_client.close_failed"]
        assert len(failures) == 1
        assert failures[0]["error"] == "socket reset"


class TestConcurrency:
    def test_concurrent_recreation_builds_one_client(self):
        built = []
        gate = threading.Event()

        def slow_build(name, properties):
            gate.wait(timeout=5)
            time.sleep(0.01)
            client = MagicMock()
            client.is_closed.return_value = False
            built.append(client)
            return client

        handle = IngestClientHandle("c", slow_build)
        with ThreadPoolExecutor(max_workers=8) as pool:
            futures = [pool.submit(handle.ensure_open) for _ in range(8)]
            gate.set()
            results = [f.result() for f in futures]

        assert len(built) == 1
        assert all(r is built[0] for r in results)
        assert handle.generation == 1
