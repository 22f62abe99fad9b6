from __future__ import annotations

import bisect
import math
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Sequence, Tuple

from . import config
from .models import EMPTY_SUMMARY, ProbeResult, WindowSummary


def percentile(values: Sequence[float], quantile: float) -> Optional[float]:
    """Linear-interpolated percentile; None for an empty set."""
    if not values:
        return None
    ordered = sorted(float(v) for v in values)
    pos = (len(ordered) - 1) * quantile
    lo = int(math.floor(pos))
    hi = min(lo + 1, len(ordered) - 1)
    return ordered[lo] + (pos - lo) * (ordered[hi] - ordered[lo])


def summarize_results(results: Sequence[ProbeResult]) -> WindowSummary:
    if not results:
        return EMPTY_SUMMARY
    latencies = [r.latency_ms for r in results if r.ok]
    success_rate = len(latencies) / len(results)
    average = sum(latencies) / len(latencies) if latencies else None
    return WindowSummary(
        success_rate=success_rate,
        average=average,
        p90=percentile(latencies, 0.90),
        last_result=results[-1],
        count=len(results),
    )


class WindowAggregator:
    """Per-target rolling windows of probe results, bounded by time.

    Windows are pruned lazily on every record and summarize call. All access
    goes through one lock so resets never interleave with a half-finished
    record or summary.
    """

    def __init__(
        self,
        window_seconds: float = config.WINDOW_SECONDS,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.window_seconds = window_seconds
        self._clock = clock
        self._monotonic = monotonic
        self._lock = threading.Lock()
        self._windows: Dict[str, Deque[ProbeResult]] = {}
        # (wall, monotonic) instant of each reset
        self._reset_at: Dict[str, Tuple[float, float]] = {}
        self._reset_floor = (float("-inf"), float("-inf"))

    def record(self, result: ProbeResult) -> bool:
        """Add a result to its target's window.

        Returns False when the result was dispatched before the target's last
        reset, or has already aged out, and was therefore dropped.
        """
        with self._lock:
            now = self._clock()
            if self._before_reset(result):
                return False
            if result.timestamp < now - self.window_seconds:
                return False
            window = self._windows.setdefault(result.target_id, deque())
            if not window or window[-1].timestamp <= result.timestamp:
                window.append(result)
            else:
                # late arrival; keep timestamp order
                items = list(window)
                idx = bisect.bisect_right([r.timestamp for r in items], result.timestamp)
                items.insert(idx, result)
                window.clear()
                window.extend(items)
            self._prune(window, now)
            return True

    def summarize(self, target_id: str) -> WindowSummary:
        with self._lock:
            window = self._windows.get(target_id)
            if not window:
                return EMPTY_SUMMARY
            self._prune(window, self._clock())
            return summarize_results(list(window))

    def results(self, target_id: str) -> List[ProbeResult]:
        with self._lock:
            window = self._windows.get(target_id)
            if not window:
                return []
            self._prune(window, self._clock())
            return list(window)

    def reset(self, target_id: str):
        """Clear one target's window; results dispatched before now are ignored."""
        with self._lock:
            self._windows.pop(target_id, None)
            self._reset_at[target_id] = self._stamp()

    def reset_all(self):
        with self._lock:
            self._windows.clear()
            self._reset_at.clear()
            self._reset_floor = self._stamp()

    def discard(self, target_id: str):
        """Drop everything known about a deleted target."""
        with self._lock:
            self._windows.pop(target_id, None)
            self._reset_at.pop(target_id, None)

    def target_ids(self) -> List[str]:
        with self._lock:
            return list(self._windows)

    def _stamp(self) -> Tuple[float, float]:
        return self._clock(), self._monotonic()

    def _before_reset(self, result: ProbeResult) -> bool:
        wall, mono = self._reset_at.get(result.target_id, self._reset_floor)
        floor_wall, floor_mono = self._reset_floor
        if result.dispatched is not None:
            # monotonic, so a wall clock stepped back cannot reject it
            return result.dispatched < max(mono, floor_mono)
        return result.timestamp < max(wall, floor_wall)

    def _prune(self, window: Deque[ProbeResult], now: float):
        cutoff = now - self.window_seconds
        while window and window[0].timestamp < cutoff:
            window.popleft()
