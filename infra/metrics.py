from __future__ import annotations

import time
from collections import defaultdict
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional


class Metrics:
    """Process-wide counters for trades, RPC health and revenue.

    Reason counters group by a label (error kind, trade state, liquidity
    category); histograms keep the last max_samples values.
    """

    def __init__(self, max_samples: int = 2000) -> None:
        self._counters: Dict[str, int] = defaultdict(int)
        self._reason_counters: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._histograms: Dict[str, List[float]] = defaultdict(list)
        self._max_samples = int(max_samples)

    def reset(self) -> None:
        self._counters.clear()
        self._reason_counters.clear()
        self._histograms.clear()

    def inc(self, name: str, n: int = 1) -> None:
        if not name:
            return
        self._counters[str(name)] += int(n)

    def inc_reason(self, group: str, reason: str, n: int = 1) -> None:
        if not group or not reason:
            return
        self._reason_counters[str(group)][str(reason)] += int(n)

    def counter(self, name: str) -> int:
        return int(self._counters.get(str(name), 0))

    def reason(self, group: str, reason: str) -> int:
        return int(self._reason_counters.get(str(group), {}).get(str(reason), 0))

    def observe(self, name: str, value: float) -> None:
        if not name:
            return
        try:
            v = float(value)
        except (TypeError, ValueError):
            return
        if v != v:  # NaN
            return
        bucket = self._histograms[str(name)]
        bucket.append(v)
        if len(bucket) > self._max_samples:
            del bucket[: len(bucket) - self._max_samples]

    @contextmanager
    def timer(self, name: str) -> Iterator[None]:
        t0 = time.perf_counter()
        try:
            yield
        finally:
            self.observe(name, (time.perf_counter() - t0) * 1000.0)

    @staticmethod
    def _percentile(vals: List[float], pct: float) -> Optional[float]:
        if not vals:
            return None
        v = sorted(vals)
        if len(v) == 1:
            return float(v[0])
        k = max(0, min(len(v) - 1, int(round((pct / 100.0) * (len(v) - 1)))))
        return float(v[k])

    def snapshot(self) -> Dict[str, Any]:
        hist_stats: Dict[str, Any] = {}
        for name, vals in self._histograms.items():
            hist_stats[name] = {
                "count": len(vals),
                "p50": self._percentile(vals, 50.0),
                "p95": self._percentile(vals, 95.0),
            }
        return {
            "counters": dict(self._counters),
            "reason_counters": {group: dict(counts) for group, counts in self._reason_counters.items()},
            "histograms": hist_stats,
        }


METRICS = Metrics()
