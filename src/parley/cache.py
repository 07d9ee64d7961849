"""
Bounded, time-expiring cache of generated replies.

Keys fingerprint the normalised utterance plus whether a document was
attached. Entries are immutable once written; when full, the oldest insertion
is evicted.
"""
from __future__ import annotations

import hashlib
import re
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, Optional

from .clock import Clock, default_clock
from .logging_utils import setup_logger

logger = setup_logger("parley.cache", "logs/parley.log")

_PUNCTUATION = re.compile(r"[^\w\s]")


@dataclass(frozen=True)
class CacheEntry:
    response: str
    timestamp: float


def normalize_utterance(text: str) -> str:
    return _PUNCTUATION.sub("", (text or "").lower().strip())


def cache_key(text: str, has_document: bool) -> str:
    normalized = normalize_utterance(text) + ("doc" if has_document else "no-doc")
    return hashlib.md5(normalized.encode("utf-8")).hexdigest()[:16]


class ResponseCache:
    """Insertion-ordered reply cache with TTL expiry"""

    def __init__(self, max_size: int = 100, ttl: float = 300.0, clock: Optional[Clock] = None):
        self.max_size = max(1, max_size)
        self.ttl = ttl
        self.clock = clock or default_clock()
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and self.clock.monotonic() - entry.timestamp < self.ttl:
                self.hits += 1
                return entry.response
            if entry is not None:
                del self._entries[key]
            self.misses += 1
            return None

    def put(self, key: str, response: str) -> None:
        if not response:
            return
        with self._lock:
            if key in self._entries:
                del self._entries[key]
            while len(self._entries) >= self.max_size:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug(f"Evicted cache entry {evicted}")
            self._entries[key] = CacheEntry(response=response, timestamp=self.clock.monotonic())
        logger.debug(f"Stored response for key {key}")

    def purge_expired(self) -> int:
        now = self.clock.monotonic()
        with self._lock:
            expired = [k for k, e in self._entries.items() if now - e.timestamp >= self.ttl]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.info(f"Removed {len(expired)} expired cache entries; {len(self)} remaining")
        return len(expired)

    async def run_purge_loop(self, interval: float = 60.0) -> None:
        """Periodically drop expired entries until cancelled"""
        while True:
            await self.clock.sleep(interval)
            self.purge_expired()

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {"size": len(self._entries), "max_size": self.max_size,
                    "hits": self.hits, "misses": self.misses}
