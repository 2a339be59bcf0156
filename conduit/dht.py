"""Seeder discovery registry.

Seeders announce that they hold content keyed by the hash of the
encrypted content; buyers look up known seeders for a given hash.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import Any, Optional

log = logging.getLogger(__name__)


def _key(encrypted_hash: bytes) -> bytes:
    key = bytes(encrypted_hash)
    if len(key) != 32:
        raise ValueError(f"encrypted_hash must be 32 bytes, got {len(key)}")
    return key


@dataclass
class SeederInfo:
    """A remote seeder known to hold some content."""

    node_id: str
    addr: Any
    price_sats: int
    last_seen: float = field(default_factory=time.monotonic)
    """Monotonic timestamp (seconds) of when the seeder was last seen."""


class SeederRegistry:
    """Thread-safe record of locally seeded content and discovered remote seeders."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._local: dict[bytes, Any] = {}
        self._remote: dict[bytes, list[SeederInfo]] = {}

    def announce_local(self, encrypted_hash: bytes, addr: Any) -> None:
        """Record that this node seeds the given content at ``addr``."""
        key = _key(encrypted_hash)
        log.info("announcing local content %s", key.hex())
        with self._lock:
            self._local[key] = addr

    def withdraw_local(self, encrypted_hash: bytes) -> None:
        """Remove a local announcement, if present."""
        with self._lock:
            self._local.pop(_key(encrypted_hash), None)

    def local_addr(self, encrypted_hash: bytes) -> Optional[Any]:
        """Address announced for local content, or None."""
        with self._lock:
            return self._local.get(_key(encrypted_hash))

    def add_remote_seeder(self, encrypted_hash: bytes, info: SeederInfo) -> None:
        """Add a seeder, or refresh the entry with the same node id."""
        key = _key(encrypted_hash)
        log.debug("discovered remote seeder %s for %s", info.node_id, key.hex())
        with self._lock:
            seeders = self._remote.setdefault(key, [])
            existing = next((s for s in seeders if s.node_id == info.node_id), None)
            if existing is None:
                seeders.append(replace(info))
            else:
                existing.addr = info.addr
                existing.last_seen = info.last_seen
                existing.price_sats = info.price_sats

    def get_seeders(self, encrypted_hash: bytes) -> list[SeederInfo]:
        """Copies of the known seeders for the content, in discovery order."""
        with self._lock:
            return [replace(s) for s in self._remote.get(_key(encrypted_hash), [])]

    def prune_stale(self, max_age: float | timedelta) -> None:
        """Drop seeders not seen within ``max_age`` (seconds or timedelta)."""
        seconds = max_age.total_seconds() if isinstance(max_age, timedelta) else float(max_age)
        cutoff = time.monotonic() - seconds
        with self._lock:
            for key in list(self._remote):
                fresh = [s for s in self._remote[key] if s.last_seen > cutoff]
                if fresh:
                    self._remote[key] = fresh
                else:
                    del self._remote[key]


def discover_seeders(encrypted_hash: bytes, registry: SeederRegistry) -> list[SeederInfo]:
    """Return the seeders the registry knows for the content."""
    seeders = registry.get_seeders(encrypted_hash)
    if not seeders:
        log.warning("no seeders found in registry for %s", bytes(encrypted_hash).hex())
    return seeders