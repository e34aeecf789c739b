"""Concurrent driver for a Workload.

A fixed pool of worker threads calls Workload.execute_once() back to back
until the run duration elapses or the shared iteration budget is used up.
In-flight calls always finish; nothing is interrupted. A worker that hits a
fatal error logs it with its traceback and stops; the others carry on.

Key types:
- RunResult: Outcome of one run (iterations, failures, elapsed time, stats)
- WorkloadRunner: run(reporter) entry point
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import List, Optional

from tqdm import tqdm

from txchaos.reporter import Reporter
from txchaos.stats import LatencyStats
from txchaos.workload import Workload

logger = logging.getLogger(__name__)


@dataclass
class RunResult:
    iterations: int
    failures: int
    elapsed_s: float
    stats: LatencyStats
    errors: List[str] = field(default_factory=list)
    anomalies: int = 0

    @property
    def failed(self) -> bool:
        return self.failures > 0


class WorkloadRunner:
    """Runs a workload on `concurrency` threads.

    Args:
        workload: Scenario to drive.
        concurrency: Number of worker threads.
        duration_s: Wall-clock budget. Ignored when iterations is set.
        iterations: Total execute_once() calls across all workers.
        progress: Show a tqdm progress bar.
    """

    def __init__(
        self,
        workload: Workload,
        concurrency: int,
        duration_s: Optional[float] = None,
        iterations: Optional[int] = None,
        progress: bool = False,
    ):
        if concurrency <= 0:
            raise ValueError(f"concurrency must be positive, got {concurrency}")
        if duration_s is None and iterations is None:
            raise ValueError("Either duration_s or iterations is required")
        self.workload = workload
        self.concurrency = concurrency
        self.duration_s = None if iterations is not None else duration_s
        self.iterations = iterations
        self.progress = progress

        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._claimed = 0
        self._completed = 0
        self._errors: List[str] = []
        self._pbar: Optional[tqdm] = None

    def _claim(self) -> bool:
        """Take one unit of the iteration budget."""
        with self._lock:
            if self.iterations is not None and self._claimed >= self.iterations:
                return False
            self._claimed += 1
            return True

    def _worker(self, worker_id: int) -> None:
        while not self._stop.is_set() and self._claim():
            try:
                self.workload.execute_once()
            except Exception as e:
                logger.error(f"Worker {worker_id} stopped on fatal error: {e}", exc_info=True)
                with self._lock:
                    self._errors.append(f"{type(e).__name__}: {e}")
                return
            with self._lock:
                self._completed += 1
                if self._pbar is not None:
                    self._pbar.update(1)

    def run(self, reporter: Reporter) -> RunResult:
        workload = self.workload
        workload.pre_validate()
        workload.before_all_executions()

        if self.iterations is not None:
            logger.info(f"Running {type(workload).__name__}: {self.iterations} iterations "
                        f"on {self.concurrency} threads")
        else:
            logger.info(f"Running {type(workload).__name__}: {self.duration_s}s "
                        f"on {self.concurrency} threads")

        self._pbar = tqdm(total=self.iterations, desc="Executing", unit="txn",
                          disable=not self.progress)
        start = time.perf_counter()
        try:
            with ThreadPoolExecutor(max_workers=self.concurrency,
                                    thread_name_prefix="txchaos-worker") as executor:
                futures = [executor.submit(self._worker, i) for i in range(self.concurrency)]
                wait(futures, timeout=self.duration_s)
                self._stop.set()
                wait(futures)
        finally:
            self._stop.set()
            elapsed = time.perf_counter() - start
            self._pbar.close()
            self._pbar = None
            workload.after_all_executions(reporter)

        errors = self._errors + workload.teardown_errors
        logger.info(f"Completed {self._completed} iterations in {elapsed:.2f}s "
                    f"({len(errors)} failures)")
        return RunResult(
            iterations=self._completed,
            failures=len(errors),
            elapsed_s=elapsed,
            stats=workload.stats,
            errors=errors,
            anomalies=workload.anomaly_count,
        )
