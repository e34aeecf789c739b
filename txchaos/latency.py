"""Statement latency for the in-memory store.

The in-memory store sleeps before every statement so that concurrent
transactions actually interleave. Without it, a short transaction tends to
complete inside a single interpreter time slice and the store looks more
isolated than it is.

Key types:
- StatementLatency: ABC; delay_s(rng) is the pause before one statement
- FixedLatency: same pause for every statement
- UniformLatency: pause drawn uniformly between two bounds
- LognormalLatency: lognormal pause around a median, capped
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

import numpy as np


class StatementLatency(ABC):
    """Pause taken by the store before executing one statement."""

    @abstractmethod
    def sample_ms(self, rng: np.random.RandomState) -> float:
        ...

    def delay_s(self, rng: np.random.RandomState) -> float:
        """Pause in seconds; never negative."""
        return max(self.sample_ms(rng), 0.0) / 1000.0


@dataclass(frozen=True)
class FixedLatency(StatementLatency):
    latency_ms: float

    def sample_ms(self, rng: np.random.RandomState) -> float:
        return self.latency_ms


@dataclass(frozen=True)
class UniformLatency(StatementLatency):
    low_ms: float
    high_ms: float

    def sample_ms(self, rng: np.random.RandomState) -> float:
        return float(rng.uniform(self.low_ms, self.high_ms))


@dataclass(frozen=True)
class LognormalLatency(StatementLatency):
    """Lognormal pause: median_ms is the 50th percentile, sigma the tail
    weight. Samples above max_ms are clipped so a single statement cannot
    stall a worker for long."""
    median_ms: float
    sigma: float
    max_ms: float = 50.0

    def sample_ms(self, rng: np.random.RandomState) -> float:
        raw = rng.lognormal(mean=np.log(self.median_ms), sigma=self.sigma)
        return min(float(raw), self.max_ms)


def latency_from_config(cfg: dict) -> StatementLatency | None:
    """Build a latency from a [store.statement_latency] table.

    Returns None when the table is empty or the fixed latency is zero.
    """
    if not cfg:
        return None
    dist = cfg.get("distribution", "fixed")
    if dist == "fixed":
        value = float(cfg.get("value", 0.0))
        return FixedLatency(latency_ms=value) if value > 0 else None
    if dist == "uniform":
        return UniformLatency(
            low_ms=float(cfg.get("low", 0.0)),
            high_ms=float(cfg.get("high", 1.0)),
        )
    if dist == "lognormal":
        return LognormalLatency(
            median_ms=float(cfg.get("median", 1.0)),
            sigma=float(cfg.get("sigma", 0.5)),
            max_ms=float(cfg.get("max", 50.0)),
        )
    raise ValueError(f"Unknown latency distribution: {dist!r}")
