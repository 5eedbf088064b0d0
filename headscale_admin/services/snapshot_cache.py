from __future__ import annotations

import itertools
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Optional

from headscale_admin.logger import get_logger
from headscale_admin.services.snapshots import Snapshot

_logger = get_logger("services.snapshot_cache")


@dataclass(frozen=True)
class CacheEntry:
    sequence: int
    snapshot: Snapshot
    stored_at: datetime


class SnapshotCache:
    """Holds the most recent snapshot; the newest invocation wins.

    Writers allocate a sequence number before they start fetching. A write
    whose sequence is older than the stored one is discarded, so a slow
    refresh that finishes late cannot overwrite a newer snapshot. The entry
    is replaced as one immutable object, never mutated in place.
    """

    def __init__(self) -> None:
        self._counter = itertools.count(1)
        self._entry: Optional[CacheEntry] = None
        self._lock = Lock()

    def next_sequence(self) -> int:
        with self._lock:
            return next(self._counter)

    def get(self) -> Optional[Snapshot]:
        entry = self._entry
        return entry.snapshot if entry is not None else None

    def entry(self) -> Optional[CacheEntry]:
        return self._entry

    @property
    def sequence(self) -> int:
        entry = self._entry
        return entry.sequence if entry is not None else 0

    def set(self, snapshot: Snapshot, sequence: Optional[int] = None) -> bool:
        with self._lock:
            if sequence is None:
                sequence = next(self._counter)
            current = self._entry
            if current is not None and sequence < current.sequence:
                _logger.debug(
                    "snapshot_cache.stale",
                    "Discarded stale snapshot write",
                    sequence=sequence,
                    current_sequence=current.sequence,
                )
                return False
            self._entry = CacheEntry(
                sequence=sequence,
                snapshot=snapshot,
                stored_at=datetime.now(timezone.utc),
            )
            return True
