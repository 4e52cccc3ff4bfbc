"""Load a watcher config from YAML with ``${VAR}`` environment references.

Instances of one deployment usually share a file and differ only in the
values they pull from the environment::

    address: ${REDIS_URL:-redis://localhost:6379/0}
    options:
      channel: /casbin
      local_id: ${HOSTNAME}

The file is overlaid on ``defaults/watcher.yaml`` before validation.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from casbin_redis_watcher.config.models import WatcherConfig

DEFAULTS_PATH = Path(__file__).parent / "defaults" / "watcher.yaml"

_ENV_REF = re.compile(r"\$\{(?P<name>[A-Za-z_][A-Za-z0-9_]*)(?::-(?P<default>[^}]*))?\}")


def expand_env(value: Any) -> Any:
    """Substitute ``${VAR}`` and ``${VAR:-default}`` in every string of *value*.

    Raises:
        ValueError: a referenced variable is unset and has no default.
    """
    if isinstance(value, dict):
        return {key: expand_env(item) for key, item in value.items()}
    if isinstance(value, list):
        return [expand_env(item) for item in value]
    if not isinstance(value, str):
        return value

    def _lookup(match: re.Match[str]) -> str:
        name = match["name"]
        found = os.environ.get(name, match["default"])
        if found is None:
            msg = f"Watcher config references unset environment variable '{name}'"
            raise ValueError(msg)
        return found

    return _ENV_REF.sub(_lookup, value)


def overlay(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    """Return *base* with *overrides* merged in section by section."""
    merged = dict(base)
    for key, value in overrides.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = overlay(current, value)
        else:
            merged[key] = value
    return merged


def _read_mapping(path: Path) -> dict[str, Any]:
    with path.open() as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            mark = getattr(exc, "problem_mark", None)
            where = f" at line {mark.line + 1}, column {mark.column + 1}" if mark else ""
            msg = f"Failed to parse YAML in {path}{where}: {exc}"
            raise ValueError(msg) from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        msg = f"Expected a YAML mapping at top level in {path}, got {type(data).__name__}"
        raise TypeError(msg)
    return data


def load_defaults() -> dict[str, Any]:
    """The built-in defaults every watcher config is overlaid on."""
    return _read_mapping(DEFAULTS_PATH)


def build_watcher_config(overrides: dict[str, Any]) -> WatcherConfig:
    """Validate *overrides* (env references expanded) on top of the defaults."""
    return WatcherConfig.model_validate(overlay(load_defaults(), expand_env(overrides)))


def load_watcher_config(path: str | Path) -> WatcherConfig:
    """Read, expand and validate the watcher config at *path*.

    Raises:
        FileNotFoundError: *path* does not exist.
        TypeError: the file's top level is not a mapping.
        ValueError: unparsable YAML, an unset variable or a failed validation.
    """
    path = Path(path)
    overrides = _read_mapping(path)
    try:
        return build_watcher_config(overrides)
    except ValidationError as exc:
        msg = f"Invalid watcher config ({path}):\n{exc}"
        raise ValueError(msg) from exc
