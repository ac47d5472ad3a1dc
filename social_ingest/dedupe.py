from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Protocol


class _RecordExists(Protocol):
    def exists(self, post_id: str) -> bool: ...


def dedupe_key(post_id: str) -> str:
    key = (post_id or "").strip()
    if not key:
        raise ValueError("post_id must be non-empty")
    return key


@dataclass
class SeenKeys:
    """Thread-safe set of post ids already claimed during one pass."""

    keys: set[str] = field(default_factory=set)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def has(self, key: str) -> bool:
        with self._lock:
            return key in self.keys

    def claim(self, key: str) -> bool:
        """Add key; return False if it was already present."""
        with self._lock:
            if key in self.keys:
                return False
            self.keys.add(key)
            return True


class Deduplicator:
    """
    Duplicate guard consulted before any enrichment work is spent on a candidate.

    The store lookup and the later create are not atomic; the store's unique
    post id constraint settles races between concurrent passes. Soft-deleted records
    still count as stored.
    """

    def __init__(self, store: _RecordExists, *, seen: SeenKeys | None = None) -> None:
        self._store = store
        self._seen = seen if seen is not None else SeenKeys()

    def exists(self, post_id: str) -> bool:
        return self._store.exists(dedupe_key(post_id))

    def is_duplicate(self, post_id: str) -> bool:
        key = dedupe_key(post_id)
        if not self._seen.claim(key):
            return True
        return self._store.exists(key)
