from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml

from .errors import PersistenceError


def _atomic_write_yaml(path: Path, data: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with open(tmp_path, "w", encoding="utf-8") as handle:
        yaml.safe_dump(
            data,
            handle,
            sort_keys=False,
            default_flow_style=False,
            allow_unicode=True,
        )
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


def _atomic_write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with open(tmp_path, "w", encoding="utf-8") as handle:
        handle.write(content)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


def _load_data_with_error(
    path: Path,
    default: dict[str, Any],
) -> tuple[dict[str, Any], str | None]:
    """
    Load a YAML mapping and return (data, error_message).

    A missing file is not an error. Parse and IO failures are reported so
    callers can refuse to overwrite corrupted durable state.
    """
    if not path.exists():
        return default, None
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except OSError as exc:
        return default, f"{path.name}: {exc.__class__.__name__}: {exc}"
    except yaml.YAMLError as exc:
        return default, f"{path.name}: YAMLError: {exc}"
    if data is None:
        return default, None
    if not isinstance(data, dict):
        return default, f"{path.name}: expected mapping, got {type(data).__name__}"
    return data, None


def load_document(path: Path, key: str) -> dict[str, dict[str, Any]] | None:
    """Load the ``key`` mapping of a persisted registry document.

    Returns ``None`` when the file does not exist.

    Raises:
        PersistenceError: If the file is unreadable or has the wrong shape.
    """
    if not path.exists():
        return None
    data, err = _load_data_with_error(path, {})
    if err:
        raise PersistenceError(f"Corrupt state file {path}: {err}")
    items = data.get(key, {})
    if items is None:
        return {}
    if not isinstance(items, dict):
        raise PersistenceError(
            f"Corrupt state file {path}: '{key}' must be a mapping, got {type(items).__name__}"
        )
    for item_key, item in items.items():
        if not isinstance(item, dict):
            raise PersistenceError(f"Corrupt state file {path}: entry {item_key!r} is not a mapping")
    return items


def save_document(path: Path, key: str, items: dict[str, dict[str, Any]], version: int) -> None:
    """Durably replace a registry document.

    Raises:
        PersistenceError: If the write fails.
    """
    try:
        _atomic_write_yaml(path, {"version": version, key: items})
    except (OSError, yaml.YAMLError) as exc:
        raise PersistenceError(f"Failed to save {path.name}: {exc}") from exc
