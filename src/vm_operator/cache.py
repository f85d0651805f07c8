"""Local mirror of provider-side resource state.

One ``ResourceCache`` exists per tracked lookup (stacks by ID, servers by
group name, floating IPs by port, ...). Reconcile passes register interest
with ``listen`` and read immutable snapshots; the poller is the only writer
and pushes full listings through ``apply_page``.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from typing import Any

from .provider import ProviderKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    """Immutable snapshot of one provider resource (or group of resources)."""

    provider_id: str = ""
    name: str = ""
    status: str = ""
    status_reason: str = ""
    address: str = ""
    port_id: str = ""
    # (network name, IPv4 address) pairs for servers
    addresses: tuple[tuple[str, str], ...] = ()
    # Per-instance entries for grouped caches
    members: tuple[CacheEntry, ...] = ()
    synced: bool = False
    present: bool = False


KeyFunc = Callable[[dict[str, Any]], "str | None"]
ConvertFunc = Callable[[dict[str, Any]], CacheEntry]


class ResourceCache:
    """Per-kind cache of listened resources.

    Args:
        kind: Provider kind whose listings feed this cache.
        key_of: Extracts the lookup key from a raw provider item (None to skip).
        convert: Copies the interesting provider fields into a ``CacheEntry``.
        grouped: Collect every item sharing a key into ``members``.
    """

    def __init__(
        self,
        kind: ProviderKind,
        key_of: KeyFunc,
        convert: ConvertFunc,
        grouped: bool = False,
    ) -> None:
        self.kind = kind
        self._key_of = key_of
        self._convert = convert
        self._grouped = grouped
        self._lock = threading.Lock()
        self._entries: dict[str, CacheEntry] = {}
        # Monotonic time interest was (re)registered; listings that started
        # earlier carry no information about the entry
        self._armed_at: dict[str, float] = {}

    def listen(self, key: str) -> CacheEntry:
        """Register interest in ``key`` (idempotent) and return its snapshot."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                logger.debug("Listening", extra={"kind": self.kind.value, "key": key})
                entry = CacheEntry()
                self._entries[key] = entry
                self._armed_at[key] = time.monotonic()
            return entry

    def rearm(self, key: str) -> None:
        """Mark ``key`` unsynced until a listing started after now is applied."""
        with self._lock:
            entry = self._entries.get(key, CacheEntry())
            self._entries[key] = replace(entry, synced=False)
            self._armed_at[key] = time.monotonic()

    def remove(self, key: str) -> None:
        """Drop interest in ``key``."""
        with self._lock:
            self._entries.pop(key, None)
            self._armed_at.pop(key, None)

    def read(self, key: str) -> tuple[CacheEntry, bool]:
        """Return ``(snapshot, ok)``; ok is False if ``key`` was never listened."""
        with self._lock:
            entry = self._entries.get(key)
        if entry is None:
            return CacheEntry(), False
        return entry, True

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def apply_page(self, items: Iterable[dict[str, Any]], started_at: float | None = None) -> None:
        """Fold one complete listing into the cache.

        Args:
            items: Every provider item of this kind from one poll cycle.
            started_at: ``time.monotonic()`` when the listing began. Entries
                (re)armed after that instant are left untouched.
        """
        observed: dict[str, list[CacheEntry]] = {}
        for item in items:
            key = self._key_of(item)
            if key is None:
                continue
            observed.setdefault(key, []).append(self._convert(item))

        with self._lock:
            for key, old in list(self._entries.items()):
                if started_at is not None and self._armed_at.get(key, 0.0) > started_at:
                    continue
                found = observed.get(key)
                if not found:
                    if old.present:
                        logger.info(
                            "Resource no longer listed",
                            extra={"kind": self.kind.value, "key": key},
                        )
                    self._entries[key] = replace(old, synced=True, present=False)
                elif self._grouped:
                    members = tuple(sorted(found, key=lambda e: e.name))
                    self._entries[key] = CacheEntry(
                        name=key, members=members, synced=True, present=True
                    )
                else:
                    self._entries[key] = replace(found[-1], synced=True, present=True)
