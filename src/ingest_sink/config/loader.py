"""Task config loading: packaged defaults, YAML file, environment.

Precedence, lowest first:

1. ``defaults/task.yaml`` shipped with the package
2. the user's YAML file, with ``${VAR}`` / ``${VAR:-default}`` placeholders
3. ``INGEST_SINK__SECTION__FIELD=value`` environment overrides
"""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any, cast

import yaml
from pydantic import ValidationError

from ingest_sink.config.models import SinkTaskConfig

DEFAULTS_DIR = Path(__file__).parent / "defaults"
ENV_PREFIX = "INGEST_SINK__"

_PLACEHOLDER = re.compile(r"\$\{(?P<name>[^}:]+)(?::-(?P<default>(?:[^}\\]|\\.)*))?}")


def expand_placeholders(data: Any, environ: Mapping[str, str] | None = None) -> Any:
    """Substitute ``${VAR}`` and ``${VAR:-default}`` anywhere in parsed YAML."""
    env = os.environ if environ is None else environ

    def _sub(match: re.Match[str]) -> str:
        name = match.group("name")
        if name in env:
            return env[name]
        default = match.group("default")
        if default is None:
            msg = f"Environment variable '{name}' is not set and no default provided"
            raise ValueError(msg)
        return default.replace("\\}", "}")

    if isinstance(data, str):
        return _PLACEHOLDER.sub(_sub, data)
    if isinstance(data, dict):
        return {k: expand_placeholders(v, env) for k, v in data.items()}
    if isinstance(data, list):
        return [expand_placeholders(v, env) for v in data]
    return data


def deep_merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    """Return *base* with *overrides* merged in; nested dicts merge key by key."""
    merged = dict(base)
    for key, value in overrides.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def env_overrides(environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    """Collect ``INGEST_SINK__A__B=value`` variables into ``{"a": {"b": value}}``.

    Values are parsed as YAML scalars so ``10`` and ``true`` keep their types.
    """
    env = os.environ if environ is None else environ
    tree: dict[str, Any] = {}
    for name, raw in env.items():
        if not name.startswith(ENV_PREFIX):
            continue
        path = [part.lower() for part in name[len(ENV_PREFIX) :].split("__") if part]
        if not path:
            continue
        node = tree
        for part in path[:-1]:
            node = node.setdefault(part, {})
        node[path[-1]] = yaml.safe_load(raw) if raw else raw
    return tree


def read_yaml(path: str | Path) -> dict[str, Any]:
    """Parse a YAML mapping from *path*, reporting the error position on failure."""
    p = Path(path)
    if not p.exists():
        msg = f"Config file not found: {p}"
        raise FileNotFoundError(msg)
    try:
        with p.open() as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as exc:
        mark = getattr(exc, "problem_mark", None)
        where = f" at line {mark.line + 1}, column {mark.column + 1}" if mark else ""
        msg = f"Failed to parse YAML in {p}{where}: {exc}"
        raise ValueError(msg) from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        msg = f"Expected a YAML mapping at top level in {p}, got {type(data).__name__}"
        raise TypeError(msg)
    return cast(dict[str, Any], data)


def build_task_config(
    overrides: dict[str, Any] | None = None,
    *,
    environ: Mapping[str, str] | None = None,
) -> SinkTaskConfig:
    """Validate packaged defaults merged with *overrides* and environment overrides."""
    merged = deep_merge(read_yaml(DEFAULTS_DIR / "task.yaml"), overrides or {})
    merged = deep_merge(merged, env_overrides(environ))
    return SinkTaskConfig.model_validate(merged)


def load_task_config(
    path: str | Path,
    *,
    environ: Mapping[str, str] | None = None,
) -> SinkTaskConfig:
    """Load a task config file; see the module docstring for precedence."""
    overrides = expand_placeholders(read_yaml(path), environ)
    try:
        return build_task_config(overrides, environ=environ)
    except ValidationError as exc:
        msg = f"Invalid task config ({path}):\n{exc}"
        raise ValueError(msg) from exc
