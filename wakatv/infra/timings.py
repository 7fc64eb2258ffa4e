# wakatv/infra/timings.py
from __future__ import annotations
import os
import statistics
import time
from collections import deque
from typing import Deque, Dict, List

# Only the newest WINDOW samples per kind are kept; `total` still counts all.
WINDOW = int(os.getenv("TIMINGS_WINDOW", "5000"))

_samples: Dict[str, Deque[float]] = {}
_totals: Dict[str, int] = {}


def record_timing(kind: str, seconds: float) -> None:
    window = _samples.get(kind)
    if window is None:
        window = _samples[kind] = deque(maxlen=WINDOW)
    window.append(float(seconds))
    _totals[kind] = _totals.get(kind, 0) + 1


class timeit:
    """
    Records how long the block took under `kind`, also when it raises:

        async with timeit("inventory.claim"):
            codes = await inventory.claim(n, email)
    """
    __slots__ = ("kind", "started")

    def __init__(self, kind: str):
        self.kind = kind
        self.started = 0.0

    async def __aenter__(self):
        self.started = time.perf_counter()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        record_timing(self.kind, time.perf_counter() - self.started)


def snapshot() -> List[Dict[str, float]]:
    """Per-kind aggregates over the retained window, sorted by kind."""
    out = []
    for kind in sorted(_samples):
        vals = list(_samples[kind])
        if not vals:
            continue
        std = statistics.stdev(vals) if len(vals) > 1 else 0.0
        out.append({
            "kind": kind,
            "n": len(vals),
            "total": _totals.get(kind, len(vals)),
            "mean_ms": statistics.mean(vals) * 1000,
            "std_ms": std * 1000,
            "max_ms": max(vals) * 1000,
        })
    return out


def reset() -> None:
    _samples.clear()
    _totals.clear()
