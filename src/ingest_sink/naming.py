"""Naming conventions for channels, clients and destination tables."""

from __future__ import annotations

import re
import zlib

CLIENT_NAME_PREFIX = "KC_CLIENT_"

_VALID_IDENTIFIER = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_$]*$")
_INVALID_CHARS = re.compile(r"[^a-zA-Z0-9_]")


def partition_channel_key(topic: str, partition: int) -> str:
    """Build the registry key for a partition: ``<topic>_<partition>``."""
    return f"{topic}_{partition}"


def client_name(connector_name: str, task_id: str) -> str:
    """Build the ingestion client name: ``KC_CLIENT_<connector>_<task_id>``."""
    return f"{CLIENT_NAME_PREFIX}{connector_name}_{task_id}"


def is_valid_identifier(name: str) -> bool:
    """Return True if *name* can be used unquoted as a table name."""
    return bool(_VALID_IDENTIFIER.match(name))


def table_name(topic: str, topic_to_table: dict[str, str] | None = None) -> str:
    """Resolve the destination table for *topic*.

    An explicit ``topic_to_table`` entry wins. Otherwise a topic that is
    already a valid identifier is used as-is; anything else is sanitised
    (invalid characters become ``_``, a leading digit gets a ``_`` prefix)
    and suffixed with a stable hash of the original topic so that distinct
    topics never collapse onto the same table.
    """
    if topic_to_table and topic in topic_to_table:
        return topic_to_table[topic]
    if is_valid_identifier(topic):
        return topic

    sanitised = _INVALID_CHARS.sub("_", topic)
    if not sanitised or not (sanitised[0].isalpha() or sanitised[0] == "_"):
        sanitised = f"_{sanitised}"
    digest = zlib.crc32(topic.encode())
    return f"{sanitised}_{digest}"
