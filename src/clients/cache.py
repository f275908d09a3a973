"""In-memory TTL cache with value-density eviction and optional disk snapshots."""

import asyncio
import contextlib
import hashlib
import json
import logging
import math
import os
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Generic, TypeVar

from src.models.status import CacheStats

logger = logging.getLogger(__name__)

T = TypeVar("T")

CLEANUP_INTERVAL_SECONDS = 60.0
SNAPSHOT_FILENAME = "cache.json"

# Floor for entry age so a brand-new entry never divides by zero
_MIN_AGE_SECONDS = 1e-3


def make_cache_key(key: str | dict | list | tuple) -> str:
    """Normalise a logical cache key into a fixed-length SHA-256 digest.

    Strings are hashed as-is; structured keys are hashed as canonical JSON
    (sorted keys) so equal filters always map to the same digest.
    """
    data = key if isinstance(key, str) else json.dumps(key, sort_keys=True, default=str)
    return hashlib.sha256(data.encode()).hexdigest()


def _namespace_of(key: object) -> str | None:
    if isinstance(key, str) and ":" in key:
        return key.split(":", 1)[0]
    return None


def _payload_size(value: object) -> int:
    try:
        return len(json.dumps(value).encode())
    except (TypeError, ValueError):
        return 0


@dataclass(slots=True)
class CacheEntry(Generic[T]):
    key: str
    value: T
    created_at: float
    expires_at: float
    hits: int = 0
    size: int = 0
    namespace: str | None = None

    def is_expired(self, now: float) -> bool:
        return self.expires_at <= now

    def score(self, now: float) -> float:
        """Value density: hits per second of age. Lowest is evicted first."""
        return self.hits / max(now - self.created_at, _MIN_AGE_SECONDS)

    def to_record(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "namespace": self.namespace,
            "value": self.value,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "hits": self.hits,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "CacheEntry[Any]":
        created_at = float(record["created_at"])
        expires_at = float(record["expires_at"])
        if expires_at <= created_at:
            raise ValueError("expires_at must be after created_at")
        return cls(
            key=str(record["key"]),
            value=record["value"],
            created_at=created_at,
            expires_at=expires_at,
            hits=int(record.get("hits", 0)),
            size=_payload_size(record["value"]),
            namespace=record.get("namespace"),
        )


class ResponseCache(Generic[T]):
    """TTL-based cache bounded by entry count.

    When full, the live entry with the lowest ``hits / age`` is evicted, so
    entries that are both old and rarely read go first. Expiry is enforced
    lazily on read and by a periodic sweep started with :meth:`start`.

    Args:
        max_size: Maximum number of entries before eviction.
        default_ttl: TTL in seconds used when ``set`` gets no explicit ttl.
        cache_dir: When given, every mutation snapshots the live entries to
            ``cache_dir/cache.json`` and the snapshot is reloaded on startup.
        clock: Wall-clock source in epoch seconds (overridable in tests).
    """

    def __init__(
        self,
        max_size: int = 100,
        default_ttl: float = 300,
        cache_dir: Path | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self.default_ttl = default_ttl
        self.cleanup_interval = CLEANUP_INTERVAL_SECONDS
        self._clock = clock
        self._entries: dict[str, CacheEntry[T]] = {}
        self._snapshot_path = cache_dir / SNAPSHOT_FILENAME if cache_dir else None
        self._cleanup_task: asyncio.Task[None] | None = None

        if self._snapshot_path is not None:
            self._load_snapshot(self._snapshot_path)

    # ── Public API ──────────────────────────────────────────────────────

    def get(self, key: str | dict) -> T | None:
        """Return the cached value, or None if absent or expired."""
        digest = make_cache_key(key)
        entry = self._entries.get(digest)
        if entry is None:
            logger.debug("Cache miss: %s", digest[:12])
            return None

        if entry.is_expired(self._clock()):
            del self._entries[digest]
            logger.debug("Cache expired: %s", digest[:12])
            self._persist()
            return None

        entry.hits += 1
        logger.debug("Cache hit: %s (hits=%d)", digest[:12], entry.hits)
        return entry.value

    def set(self, key: str | dict, value: T, ttl: float | None = None) -> None:
        """Store a value, evicting the lowest-value entry if at capacity.

        Raises:
            ValueError: If *ttl* is not positive.
        """
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            raise ValueError(f"ttl must be positive, got {ttl}")

        digest = make_cache_key(key)
        now = self._clock()

        if digest in self._entries:
            del self._entries[digest]
        elif len(self._entries) >= self.max_size:
            self._evict(now)

        self._entries[digest] = CacheEntry(
            key=digest,
            value=value,
            created_at=now,
            expires_at=now + ttl,
            size=_payload_size(value),
            namespace=_namespace_of(key),
        )
        logger.debug("Cache set: %s (ttl=%ss)", digest[:12], ttl)
        self._persist()

    def has(self, key: str | dict) -> bool:
        """Return True if a live entry exists. Does not count as a hit."""
        digest = make_cache_key(key)
        entry = self._entries.get(digest)
        if entry is None:
            return False
        if entry.is_expired(self._clock()):
            del self._entries[digest]
            self._persist()
            return False
        return True

    def delete(self, key: str | dict) -> None:
        """Remove a specific key. Missing keys are ignored."""
        digest = make_cache_key(key)
        if self._entries.pop(digest, None) is not None:
            logger.debug("Cache delete: %s", digest[:12])
            self._persist()

    def delete_namespace(self, namespace: str) -> int:
        """Remove every entry whose string key started with ``namespace:``."""
        doomed = [d for d, e in self._entries.items() if e.namespace == namespace]
        for digest in doomed:
            del self._entries[digest]
        if doomed:
            logger.debug("Cache delete namespace %s: %d entries", namespace, len(doomed))
            self._persist()
        return len(doomed)

    def clear(self) -> None:
        """Remove all entries."""
        self._entries.clear()
        logger.debug("Cache cleared")
        self._persist()

    def cleanup(self) -> int:
        """Remove expired entries. Returns the number removed."""
        removed = self._remove_expired(self._clock())
        if removed:
            self._persist()
        return removed

    def stats(self) -> CacheStats:
        total_hits = sum(e.hits for e in self._entries.values())
        size = len(self._entries)
        # Entry count stands in for the number of initial misses
        denominator = total_hits + size
        return CacheStats(
            size=size,
            max_size=self.max_size,
            hit_rate=total_hits / denominator if denominator else 0.0,
            total_hits=total_hits,
            ttl=self.default_ttl,
        )

    @property
    def size(self) -> int:
        """Current number of entries (expired ones included until swept)."""
        return len(self._entries)

    # ── Lifecycle ───────────────────────────────────────────────────────

    def start(self) -> None:
        """Start the periodic expiry sweep on the running event loop."""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.get_running_loop().create_task(
                self._cleanup_loop()
            )

    async def shutdown(self) -> None:
        """Stop the sweep and flush a final snapshot. Entries are kept."""
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._cleanup_task
            self._cleanup_task = None
        self._persist()

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval)
            removed = self.cleanup()
            if removed:
                logger.debug("Cache sweep removed %d expired entries", removed)

    # ── Internals ───────────────────────────────────────────────────────

    def _remove_expired(self, now: float) -> int:
        expired = [d for d, e in self._entries.items() if e.is_expired(now)]
        for digest in expired:
            del self._entries[digest]
        return len(expired)

    def _evict(self, now: float) -> None:
        """Drop the live entry with the lowest value density.

        Expired entries are skipped; they belong to the sweep. If nothing is
        live, the expired entries are swept instead.
        """
        victim: str | None = None
        lowest = math.inf
        for digest, entry in self._entries.items():
            if entry.is_expired(now):
                continue
            score = entry.score(now)
            if score < lowest:
                victim, lowest = digest, score

        if victim is None:
            removed = self._remove_expired(now)
            logger.debug("Cache full of expired entries, swept %d", removed)
            return

        del self._entries[victim]
        logger.debug("Cache evicted %s (score=%.4f)", victim[:12], lowest)

    def _persist(self) -> None:
        """Write the live entries to the snapshot file. Never raises."""
        if self._snapshot_path is None:
            return

        now = self._clock()
        parts: list[str] = []
        for entry in self._entries.values():
            if entry.is_expired(now):
                continue
            try:
                parts.append(json.dumps(entry.to_record()))
            except (TypeError, ValueError):
                logger.debug("Cache entry %s not serialisable, kept in memory only", entry.key[:12])

        tmp_path = self._snapshot_path.with_suffix(".tmp")
        try:
            self._snapshot_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text("[" + ",".join(parts) + "]", encoding="utf-8")
            os.replace(tmp_path, self._snapshot_path)
        except OSError as exc:
            logger.error("Failed to write cache snapshot %s: %s", self._snapshot_path, exc)

    def _load_snapshot(self, path: Path) -> None:
        """Admit non-expired entries from the snapshot file, if any."""
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable cache snapshot %s: %s", path, exc)
            return

        if not isinstance(raw, list):
            logger.warning("Ignoring malformed cache snapshot %s", path)
            return

        now = self._clock()
        for record in raw:
            if len(self._entries) >= self.max_size:
                break
            try:
                entry = CacheEntry.from_record(record)
            except (KeyError, TypeError, ValueError):
                logger.debug("Skipping malformed cache record")
                continue
            if entry.is_expired(now):
                continue
            self._entries[entry.key] = entry

        logger.info("Loaded %d cache entries from %s", len(self._entries), path)
