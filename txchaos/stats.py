"""Latency accounting for transaction attempts.

Every attempt duration reported by the TransactionWrapper lands here,
tagged with the workload path that produced it. Durations are kept raw (for
export) and in an HdrHistogram (for percentiles).
"""

from __future__ import annotations

import threading
from typing import Dict, Iterable, List, Tuple

import numpy as np
import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq
from hdrh.histogram import HdrHistogram

# Microsecond resolution, up to one hour per attempt
_HISTOGRAM_MAX_US = 60 * 60 * 1_000_000

_ARROW_SCHEMA = pa.schema([
    ("seq", pa.int64()),
    ("operation", pa.string()),
    ("duration_ms", pa.float64()),
])


class LatencyStats:
    """Thread-safe accumulator of attempt durations (seconds)."""

    def __init__(self):
        self._lock = threading.Lock()
        self._rows: List[Tuple[str, float]] = []
        self._histogram = HdrHistogram(1, _HISTOGRAM_MAX_US, 3)

    def record(self, durations: Iterable[float], operation: str = "") -> None:
        """Append durations in attempt order."""
        durations = list(durations)
        with self._lock:
            for d in durations:
                self._rows.append((operation, d))
                micros = min(max(1, int(round(d * 1_000_000))), _HISTOGRAM_MAX_US)
                self._histogram.record_value(micros)

    def __len__(self) -> int:
        with self._lock:
            return len(self._rows)

    @property
    def durations(self) -> List[float]:
        with self._lock:
            return [d for _, d in self._rows]

    def percentile_ms(self, percentile: float) -> float:
        with self._lock:
            return self._histogram.get_value_at_percentile(percentile) / 1000.0

    def summary(self) -> Dict[str, float]:
        """Count, mean, percentiles and max in milliseconds."""
        values = np.array(self.durations, dtype=np.float64) * 1000.0
        if values.size == 0:
            return {"count": 0}
        return {
            "count": int(values.size),
            "mean_ms": float(values.mean()),
            "p50_ms": self.percentile_ms(50),
            "p90_ms": self.percentile_ms(90),
            "p99_ms": self.percentile_ms(99),
            "p999_ms": self.percentile_ms(99.9),
            "max_ms": float(values.max()),
        }

    def report(self, reporter) -> None:
        reporter.header("Timing")
        summary = self.summary()
        reporter.print_left("Transaction attempts", f"{summary['count']}")
        if summary["count"] == 0:
            return
        reporter.print_left("Mean time (ms)", f"{summary['mean_ms']:.2f}")
        reporter.print_left("P50 (ms)", f"{summary['p50_ms']:.2f}")
        reporter.print_left("P90 (ms)", f"{summary['p90_ms']:.2f}")
        reporter.print_left("P99 (ms)", f"{summary['p99_ms']:.2f}")
        reporter.print_left("P99.9 (ms)", f"{summary['p999_ms']:.2f}")
        reporter.print_left("Max time (ms)", f"{summary['max_ms']:.2f}")

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    def _to_arrow_table(self) -> pa.Table:
        with self._lock:
            rows = list(self._rows)
        return pa.table(
            {
                "seq": pa.array(range(len(rows)), type=pa.int64()),
                "operation": pa.array([op for op, _ in rows], type=pa.string()),
                "duration_ms": pa.array([d * 1000.0 for _, d in rows], type=pa.float64()),
            },
            schema=_ARROW_SCHEMA,
        )

    def to_dataframe(self) -> pd.DataFrame:
        return self._to_arrow_table().to_pandas()

    def export_parquet(self, path: str) -> None:
        pq.write_table(self._to_arrow_table(), path, compression="snappy")

    def export_csv(self, path: str) -> None:
        self.to_dataframe().to_csv(path, index=False)
