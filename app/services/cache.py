"""
CACHE MODULE
============

Short-lived in-memory caches shared by every conversation in the process.

  TTLCache   - key -> value with a fixed time-to-live per instance. Expired entries are
               dropped when read and swept periodically on write. Used for tool
               results (a few seconds, to collapse bursts of identical calls such as
               model retries) and for user token quota checks (about a minute).
  RoundMemo  - per-round de-duplication: identical (tool, arguments) calls requested in
               the same batch share one execution. Created fresh for every round.

Both are optimizations only. A miss always falls through to the real call, which gives
the same answer modulo changes in the outside world.

No locking: every method is synchronous and runs on the event loop thread, and a stale
read within the TTL window is acceptable.
"""

import json
import time
from typing import Any, Callable, Dict, Hashable, Optional, Tuple


class _Miss:
    def __repr__(self) -> str:
        return "MISS"

    def __bool__(self) -> bool:
        return False


# Returned by get() when the key is absent or expired. None is a legitimate cached value.
MISS: Any = _Miss()


def canonical_json(value: Any) -> str:
    """JSON with sorted keys and no insignificant whitespace, so equal mappings give equal text."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def tool_cache_key(tool_name: str, arguments: Any) -> str:
    """
    Cache key for a tool call: tool name + canonical JSON of its arguments.

    Arguments that are still raw text (unparseable JSON) are keyed by the text itself.
    """
    if isinstance(arguments, str):
        try:
            arguments = json.loads(arguments)
        except ValueError:
            return f"{tool_name}:{arguments}"
    return f"{tool_name}:{canonical_json(arguments)}"


class TTLCache:
    """In-memory cache whose entries expire ttl seconds after they were written."""

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic, purge_every: int = 128):
        self.ttl = ttl
        self._clock = clock
        # Every purge_every writes, expired entries are swept so keys that are never
        # read again do not pile up.
        self.purge_every = max(purge_every, 1)
        self._writes = 0
        self._entries: Dict[Hashable, Tuple[Any, float]] = {}

    def get(self, key: Hashable) -> Any:
        """Return the cached value, or MISS if absent or expired (expired entries are dropped)."""
        entry = self._entries.get(key)
        if entry is None:
            return MISS
        value, expires_at = entry
        if self._clock() >= expires_at:
            self._entries.pop(key, None)
            return MISS
        return value

    def set(self, key: Hashable, value: Any, ttl: Optional[float] = None) -> None:
        lifetime = self.ttl if ttl is None else ttl
        if lifetime <= 0:
            return
        self._writes += 1
        if self._writes % self.purge_every == 0:
            self.purge_expired()
        self._entries[key] = (value, self._clock() + lifetime)

    def delete(self, key: Hashable) -> None:
        self._entries.pop(key, None)

    def purge_expired(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        now = self._clock()
        expired = [key for key, (_, expires_at) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


class RoundMemo:
    """
    De-duplicates identical tool calls inside one round.

    Unlike TTLCache it never expires and also remembers failures, so a duplicate of a
    failing call reports the same error instead of running the executor again.
    """

    def __init__(self):
        self._results: Dict[str, Any] = {}

    def get(self, key: str) -> Any:
        return self._results.get(key, MISS)

    def set(self, key: str, value: Any) -> None:
        self._results[key] = value

    def clear(self) -> None:
        self._results.clear()

    def __contains__(self, key: str) -> bool:
        return key in self._results
