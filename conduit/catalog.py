"""Persistent content catalog and trusted-manufacturer list.

Both are stored as pretty-printed JSON arrays inside a storage directory.
Catalog entries are kept as plain JSON objects. Loading never fails: a
missing file gives an empty list, and an unreadable one is reported and
also gives an empty list. Saving creates the directory when needed.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Iterable, Sequence, Union

log = logging.getLogger(__name__)

StorageDir = Union[str, "os.PathLike[str]"]

CatalogEntry = dict[str, Any]


def _storage_file(storage_dir: StorageDir, name: str) -> str:
    return f"{os.fspath(storage_dir)}/{name}"


def _read_json_array(path: str, what: str) -> list[Any] | None:
    try:
        text = Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return None
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        log.warning("failed to parse %s %s: %s", what, path, exc)
        return None
    if not isinstance(data, list):
        log.warning("failed to parse %s %s: expected a JSON array", what, path)
        return None
    return data


def _write_json_array(path: str, items: list[Any]) -> None:
    target = Path(path)
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
    except OSError:
        pass
    target.write_text(json.dumps(items, indent=2, ensure_ascii=False), encoding="utf-8")


# ── Catalog ───────────────────────────────────────────────────────────


def catalog_path(storage_dir: StorageDir) -> str:
    """Path of the catalog file in ``storage_dir``."""
    return _storage_file(storage_dir, "catalog.json")


def load_catalog(storage_dir: StorageDir) -> list[CatalogEntry]:
    """Catalog entries stored in ``storage_dir``; empty when absent or unreadable."""
    path = catalog_path(storage_dir)
    data = _read_json_array(path, "catalog")
    if data is None:
        return []
    if not all(isinstance(entry, dict) for entry in data):
        log.warning("failed to parse catalog %s: entries must be objects", path)
        return []
    return data


def save_catalog(storage_dir: StorageDir, catalog: Sequence[CatalogEntry]) -> None:
    """Write the catalog as pretty-printed JSON, replacing any previous file."""
    path = catalog_path(storage_dir)
    entries = [dict(entry) for entry in catalog]
    _write_json_array(path, entries)
    print(f"Catalog saved: {path} ({len(entries)} entries)")


# ── Trusted manufacturers ─────────────────────────────────────────────


@dataclass
class TrustedManufacturer:
    """A manufacturer key the creator has chosen to trust."""

    pk_hex: str
    name: str
    added_at: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> TrustedManufacturer:
        """Build from a JSON object; unknown keys are ignored."""
        if not isinstance(data, dict):
            raise ValueError("trusted manufacturer must be a JSON object")
        try:
            pk_hex = data["pk_hex"]
            name = data["name"]
        except KeyError as exc:
            raise ValueError(f"missing field {exc.args[0]}") from None
        added_at = data.get("added_at", "")
        for field_name, value in (("pk_hex", pk_hex), ("name", name), ("added_at", added_at)):
            if not isinstance(value, str):
                raise ValueError(f"field {field_name} must be a string")
        return cls(pk_hex, name, added_at)

    def to_dict(self) -> dict[str, str]:
        """JSON object form."""
        return asdict(self)


def trust_list_path(storage_dir: StorageDir) -> str:
    """Path of the trusted-manufacturer list in ``storage_dir``."""
    return _storage_file(storage_dir, "trusted_manufacturers.json")


def load_trust_list(storage_dir: StorageDir) -> list[TrustedManufacturer]:
    """Trusted manufacturers stored in ``storage_dir``; empty when absent or unreadable."""
    path = trust_list_path(storage_dir)
    data = _read_json_array(path, "trust list")
    if data is None:
        return []
    try:
        return [TrustedManufacturer.from_dict(item) for item in data]
    except ValueError as exc:
        log.warning("failed to parse trust list %s: %s", path, exc)
        return []


def save_trust_list(
    storage_dir: StorageDir, trust_list: Iterable[TrustedManufacturer]
) -> None:
    """Write the trusted-manufacturer list as pretty-printed JSON."""
    path = trust_list_path(storage_dir)
    items = [item.to_dict() for item in trust_list]
    _write_json_array(path, items)
    print(f"Trust list saved: {path} ({len(items)} entries)")