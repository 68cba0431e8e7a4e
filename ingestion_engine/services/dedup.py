"""
Rolling-window row deduplication.
"""
import hashlib
import threading
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, Sequence

from ingestion_engine.services.coercion import format_for_file


def row_hash(row: Dict[str, Any], columns: Sequence[str]) -> str:
    """
    SHA-256 of a mapped row.

    Hash is based on the target columns in mapping order, so two source rows
    that map to the same target values are duplicates.
    """
    hash_input = "|".join(format_for_file(row.get(name)) for name in columns)
    return hashlib.sha256(hash_input.encode("utf-8")).hexdigest()


class DeduplicationWindow:
    """
    Hashes of rows written during the last ``window_hours``.

    Entries are kept in insertion order, so expiry only looks at the oldest
    ones. Shared across jobs of one mapping.
    """

    def __init__(self, window_hours: float, clock: Callable[[], datetime]):
        self.window = timedelta(hours=window_hours)
        self.clock = clock
        self._seen: "OrderedDict[str, datetime]" = OrderedDict()
        self._lock = threading.Lock()

    def resize(self, window_hours: float) -> None:
        with self._lock:
            self.window = timedelta(hours=window_hours)

    def _expire(self, now: datetime) -> None:
        cutoff = now - self.window
        while self._seen:
            _, seen_at = next(iter(self._seen.items()))
            if seen_at > cutoff:
                break
            self._seen.popitem(last=False)

    def contains(self, digest: str) -> bool:
        with self._lock:
            self._expire(self.clock())
            return digest in self._seen

    def add_all(self, digests: Iterable[str]) -> None:
        with self._lock:
            now = self.clock()
            self._expire(now)
            for digest in digests:
                self._seen.pop(digest, None)
                self._seen[digest] = now

    def __len__(self) -> int:
        with self._lock:
            self._expire(self.clock())
            return len(self._seen)
