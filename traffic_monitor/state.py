import asyncio
import logging
import threading
from typing import Any, Dict, Optional, Tuple

from .config import MAX_BYTE_COUNT

log = logging.getLogger("TrafficMonitor.State")


class HostByteAggregator:
    """
    Per-hostname byte counters for the current accounting period.

    Followers increment from their own threads while the flusher drains the
    counters from the event loop, so every access goes through one lock.
    The committed read position of each followed file is kept under the same
    lock. record() updates counters and position together and drain() takes
    both together, so a drained offset never points past bytes that were not
    drained with it.

    A counter saturates at MAX_BYTE_COUNT, the largest value the store holds.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._totals: Dict[str, int] = {}
        self._offsets: Dict[str, Tuple[Optional[int], int]] = {}

    def _add(self, hostname: str, byte_count: int):
        # Caller holds the lock
        total = self._totals.get(hostname, 0) + byte_count
        if total > MAX_BYTE_COUNT:
            log.warning(f"Traffic for '{hostname}' exceeds {MAX_BYTE_COUNT} bytes. Capping the pending total.")
            total = MAX_BYTE_COUNT
        self._totals[hostname] = total

    def increment(self, hostname: str, byte_count: int):
        if byte_count < 0:
            raise ValueError(f"byte_count must not be negative, got {byte_count}")
        with self._lock:
            self._add(hostname, byte_count)

    def record(self, counts: Dict[str, int], path: str, inode: Optional[int], offset: int):
        """Adds the counts parsed from one chunk and commits the read position reached with them."""
        if any(byte_count < 0 for byte_count in counts.values()):
            raise ValueError(f"byte counts must not be negative, got {counts}")
        with self._lock:
            for hostname, byte_count in counts.items():
                self._add(hostname, byte_count)
            self._offsets[path] = (inode, offset)

    def restore(self, totals: Dict[str, int]):
        """Adds previously drained totals back, e.g. after a failed write."""
        with self._lock:
            for hostname, byte_count in totals.items():
                self._add(hostname, byte_count)

    def snapshot_and_reset(self) -> Dict[str, int]:
        with self._lock:
            snapshot, self._totals = self._totals, {}
        return snapshot

    def drain(self) -> Tuple[Dict[str, int], Dict[str, Tuple[Optional[int], int]]]:
        """Like snapshot_and_reset, also returning the offsets committed with the drained counters."""
        with self._lock:
            snapshot, self._totals = self._totals, {}
            offsets = dict(self._offsets)
        return snapshot, offsets

    def pending(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._totals)

    def commit_offset(self, path: str, inode: Optional[int], offset: int):
        with self._lock:
            self._offsets[path] = (inode, offset)

    def offsets(self) -> Dict[str, Tuple[Optional[int], int]]:
        with self._lock:
            return dict(self._offsets)


# --- In-Memory State ---
app_state: Dict[str, Any] = {
    'aggregator': HostByteAggregator(),
    'followers': {},  # { "path": FileFollower }
    'flush_lock': asyncio.Lock(),  # Serializes flush cycles (timer ticks and the final flush on shutdown)
    'last_flush': None,  # FlushResult of the most recent flush
}
