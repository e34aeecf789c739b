"""Anomaly bookkeeping shared by all workloads.

- ObservationBuffer: values read during ONE transaction attempt. Reset at the
  start of every attempt so a retried attempt never mixes in values read by
  an attempt that was rolled back.
- AnomalyLedger: key -> set of distinct values that should have been
  invariant within a transaction but were not. Insert-only.
- RepeatedReadDetector: folds a committed attempt's observations into the
  ledger using a per-variant anomaly rule.
- Counters: named increment-only counters for reporting.

The ledger and counters are written concurrently by workers and read after
the runner has joined all of them.
"""

from __future__ import annotations

import threading
from typing import Callable, Dict, Hashable, Iterable, Iterator, List, Tuple


# ---------------------------------------------------------------------------
# Observations
# ---------------------------------------------------------------------------

class ObservationBuffer:
    """Per-attempt observation buffer (not thread-safe; one per call)."""

    def __init__(self):
        self._observations: Dict[Hashable, List] = {}

    def reset(self) -> None:
        self._observations.clear()

    def observe(self, key: Hashable, value) -> None:
        self._observations.setdefault(key, []).append(value)

    def distinct(self) -> Dict[Hashable, Tuple]:
        """Distinct values per key, in first-seen key order."""
        return {
            key: tuple(sorted(set(values)))
            for key, values in self._observations.items()
        }

    def __len__(self) -> int:
        return len(self._observations)


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

class AnomalyLedger:
    """Insert-only mapping of key -> distinct anomalous values."""

    def __init__(self):
        self._entries: Dict[Hashable, set] = {}
        self._lock = threading.Lock()

    def record(self, key: Hashable, values: Iterable) -> None:
        """Merge values into the entry for key. Never removes anything."""
        with self._lock:
            self._entries.setdefault(key, set()).update(values)

    def get(self, key: Hashable) -> Tuple:
        with self._lock:
            return tuple(sorted(self._entries.get(key, ())))

    def items(self) -> List[Tuple[Hashable, Tuple]]:
        """Entries sorted by key text, values sorted ascending."""
        with self._lock:
            snapshot = [(k, tuple(sorted(v))) for k, v in self._entries.items()]
        return sorted(snapshot, key=lambda kv: str(kv[0]))

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __iter__(self) -> Iterator[Hashable]:
        return iter([key for key, _ in self.items()])


class RepeatedReadDetector:
    """Merges anomalous observations of a committed attempt into a ledger."""

    def __init__(
        self,
        ledger: AnomalyLedger,
        is_anomalous: Callable[[Tuple], bool],
    ):
        self._ledger = ledger
        self._is_anomalous = is_anomalous

    @property
    def ledger(self) -> AnomalyLedger:
        return self._ledger

    def new_buffer(self) -> ObservationBuffer:
        return ObservationBuffer()

    def check(self, buffer: ObservationBuffer) -> int:
        """Record anomalous keys; return how many keys were anomalous."""
        found = 0
        for key, values in buffer.distinct().items():
            if self._is_anomalous(values):
                self._ledger.record(key, values)
                found += 1
        return found


# ---------------------------------------------------------------------------
# Counters
# ---------------------------------------------------------------------------

class Counters:
    """Named integer counters; increment is the only mutation."""

    def __init__(self, *names: str):
        self._values: Dict[str, int] = {name: 0 for name in names}
        self._lock = threading.Lock()

    def increment(self, name: str, delta: int = 1) -> int:
        with self._lock:
            value = self._values.get(name, 0) + delta
            self._values[name] = value
            return value

    def __getitem__(self, name: str) -> int:
        with self._lock:
            return self._values.get(name, 0)

    def items(self) -> List[Tuple[str, int]]:
        """Counters in declaration order."""
        with self._lock:
            return list(self._values.items())
