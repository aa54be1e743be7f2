from __future__ import annotations

import time
from typing import Callable, Dict, Generic, Hashable, Optional, Tuple, TypeVar


K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class TTLCache(Generic[K, V]):
    """Small dict-backed cache with a per-entry expiry and explicit invalidation."""

    def __init__(
        self,
        ttl_s: float,
        *,
        max_entries: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_s = float(ttl_s)
        self.max_entries = int(max_entries)
        self._clock = clock
        self._data: Dict[K, Tuple[V, float]] = {}

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: object) -> bool:
        return self.get(key) is not None  # type: ignore[arg-type]

    def get(self, key: K) -> Optional[V]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            self._data.pop(key, None)
            return None
        return value

    def set(self, key: K, value: V, *, ttl_s: Optional[float] = None) -> None:
        ttl = self.ttl_s if ttl_s is None else float(ttl_s)
        self._data[key] = (value, self._clock() + ttl)
        if len(self._data) > self.max_entries:
            self.prune()

    def invalidate(self, key: K) -> None:
        self._data.pop(key, None)

    def clear(self) -> None:
        self._data.clear()

    def prune(self) -> int:
        now = self._clock()
        expired = [k for k, (_v, exp) in self._data.items() if now >= exp]
        for k in expired:
            self._data.pop(k, None)
        # Still over budget: drop the entries closest to expiry.
        overflow = len(self._data) - self.max_entries
        if overflow > 0:
            for k, _ in sorted(self._data.items(), key=lambda kv: kv[1][1])[:overflow]:
                self._data.pop(k, None)
        return len(expired)
