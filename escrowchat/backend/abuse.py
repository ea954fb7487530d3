"""Sliding-window detection of repeated content from one sender."""

from __future__ import annotations

import threading
import time
import zlib
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque

import structlog

from escrowchat.backend.errors import DuplicateContentError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class AbuseTrackingEntry:
    sender_id: str
    content_hash: str
    timestamp: float


class _Shard:
    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.windows: dict[str, Deque[AbuseTrackingEntry]] = {}
        self.last_purge = float("-inf")


class AbuseGuard:
    """Admit at most ``max_repeats`` identical hashes per sender within the window.

    The window spans all of a sender's sessions. Senders are spread over
    independently locked shards so that busy senders do not contend. A
    sender whose entries have all aged out is dropped from its shard, and
    each shard is swept for such senders at most once per window.
    """

    def __init__(
        self,
        window_seconds: float = 60.0,
        max_repeats: int = 2,
        shard_count: int = 16,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_repeats < 1:
            raise ValueError("max_repeats must be at least 1")
        self.window_seconds = window_seconds
        self.max_repeats = max_repeats
        self._clock = clock
        self._shards = [_Shard() for _ in range(max(1, shard_count))]

    def _shard(self, sender_id: str) -> _Shard:
        return self._shards[zlib.crc32(sender_id.encode("utf-8")) % len(self._shards)]

    def _evict(self, window: Deque[AbuseTrackingEntry], now: float) -> None:
        cutoff = now - self.window_seconds
        while window and window[0].timestamp <= cutoff:
            window.popleft()

    def _purge_shard(self, shard: _Shard, now: float) -> int:
        """Drop senders with no live entries; caller holds ``shard.lock``."""
        stale = []
        for sender_id, window in shard.windows.items():
            self._evict(window, now)
            if not window:
                stale.append(sender_id)
        for sender_id in stale:
            del shard.windows[sender_id]
        shard.last_purge = now
        return len(stale)

    def admit(self, sender_id: str, content_hash: str) -> AbuseTrackingEntry:
        """Reserve a slot for this content or raise ``DuplicateContentError``."""
        now = self._clock()
        shard = self._shard(sender_id)
        with shard.lock:
            if now - shard.last_purge >= self.window_seconds:
                self._purge_shard(shard, now)
            window = shard.windows.setdefault(sender_id, deque())
            self._evict(window, now)
            occurrences = sum(1 for entry in window if entry.content_hash == content_hash)
            if occurrences >= self.max_repeats:
                logger.warning("duplicate_content_blocked", sender_id=sender_id, occurrences=occurrences + 1)
                raise DuplicateContentError("Repeated content detected. Please send unique messages.")
            entry = AbuseTrackingEntry(sender_id=sender_id, content_hash=content_hash, timestamp=now)
            window.append(entry)
            return entry

    def release(self, entry: AbuseTrackingEntry) -> None:
        """Drop a reservation for a message that was not delivered."""
        shard = self._shard(entry.sender_id)
        with shard.lock:
            window = shard.windows.get(entry.sender_id)
            if not window:
                return
            try:
                window.remove(entry)
            except ValueError:
                return
            if not window:
                shard.windows.pop(entry.sender_id, None)

    def occurrences(self, sender_id: str, content_hash: str) -> int:
        now = self._clock()
        shard = self._shard(sender_id)
        with shard.lock:
            window = shard.windows.get(sender_id)
            if window is None:
                return 0
            self._evict(window, now)
            if not window:
                del shard.windows[sender_id]
                return 0
            return sum(1 for entry in window if entry.content_hash == content_hash)

    def purge_expired(self) -> int:
        """Drop every sender whose entries have all left the window."""
        now = self._clock()
        dropped = 0
        for shard in self._shards:
            with shard.lock:
                dropped += self._purge_shard(shard, now)
        if dropped:
            logger.info("abuse_window_purged", senders=dropped)
        return dropped

    def tracked_senders(self) -> int:
        total = 0
        for shard in self._shards:
            with shard.lock:
                total += len(shard.windows)
        return total

    def reset(self) -> None:
        for shard in self._shards:
            with shard.lock:
                shard.windows.clear()
