"""Workload lifecycle.

A Workload is one anomaly scenario. The runner drives it through:

1. pre_validate()             - settings sanity checks, no store access
2. before_all_executions()    - select the target accounts, once
3. execute_once()             - concurrently, many times; returns attempt durations
4. after_all_executions(r)    - once, after every worker has joined

Concrete scenarios live in txchaos.scenarios. Shared behavior (target
selection, per-thread random draws, transfer legs with row locks or
compare-and-swap) lives here so scenarios only describe their read and
write paths.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Callable, List, Optional, Sequence

import numpy as np

from txchaos.config import ConfigurationError, Settings
from txchaos.errors import OptimisticLockError, TxChaosError
from txchaos.ledger import AnomalyLedger, Counters, RepeatedReadDetector
from txchaos.model import Account, AccountId
from txchaos.reporter import FLIP_TABLE, HAPPY, Reporter
from txchaos.repository import AccountRepository
from txchaos.stats import LatencyStats
from txchaos.transaction import TransactionWrapper

logger = logging.getLogger(__name__)


class Workload(ABC):
    """Base class for anomaly scenarios.

    Subclasses declare their counters in COUNTERS and implement
    execute_once() and the reporting hooks. The ledger and counters are the
    only state mutated by concurrent workers.
    """

    #: Counter names, in reporting order
    COUNTERS: Sequence[str] = ()

    #: Minimum number of target accounts the scenario needs
    MIN_TARGETS = 1

    def __init__(
        self,
        settings: Settings,
        repository: AccountRepository,
        wrapper: TransactionWrapper,
    ):
        self.settings = settings
        self.repository = repository
        self.wrapper = wrapper
        self.accounts: List[Account] = []
        self.ledger = AnomalyLedger()
        self.detector = RepeatedReadDetector(self.ledger, self.is_anomalous)
        self.counters = Counters(*self.COUNTERS, "prevented", "cas_aborts")
        self.stats = LatencyStats()
        self.teardown_errors: List[str] = []

        self._local = threading.local()
        self._seed_lock = threading.Lock()
        self._next_seed = settings.seed

    # ------------------------------------------------------------------
    # Lifecycle hooks
    # ------------------------------------------------------------------

    def pre_validate(self) -> None:
        s = self.settings
        errors = []
        if not 0.0 <= s.read_write_ratio < 1.0:
            errors.append(f"read_write_ratio must be in [0, 1), got {s.read_write_ratio}")
        if not 0.0 <= s.write_split <= 1.0:
            errors.append(f"write_split must be in [0, 1], got {s.write_split}")
        if s.selection < self.MIN_TARGETS:
            errors.append(f"{type(self).__name__} needs at least {self.MIN_TARGETS} "
                          f"target accounts, selection is {s.selection}")
        if errors:
            raise ConfigurationError(errors)

    def before_all_executions(self) -> None:
        self.accounts = self.wrapper.execute(
            lambda: self.repository.find_target_accounts(
                self.settings.selection, self.settings.random_selection),
            lambda durations: None,
        )
        if len(self.accounts) < self.MIN_TARGETS:
            raise ConfigurationError([
                f"{type(self).__name__} needs at least {self.MIN_TARGETS} target "
                f"accounts, store returned {len(self.accounts)}"
            ])
        logger.info(f"Selected {len(self.accounts)} target accounts")

    @abstractmethod
    def execute_once(self) -> List[float]:
        """Run one read or write path; return its attempt durations (seconds)."""
        ...

    def after_all_executions(self, reporter: Reporter) -> None:
        reporter.header("Consistency Check")
        for key, values in self.ledger.items():
            reporter.error(self.describe_anomaly(key, values))

        for name, value in self.counters.items():
            reporter.print_left(f"Total {name.replace('_', ' ')}", f"{value}")

        if self.has_anomalies:
            reporter.error(f"Observed {self.anomaly_count} {self.anomaly_subject()}! {FLIP_TABLE}")
            reporter.info(self.hint_anomalies())
        elif self.teardown_errors:
            reporter.error("Final consistency check incomplete; the verdict covers the run only")
        else:
            reporter.info(f"You are good! {HAPPY}")
            reporter.info(self.hint_clean())

    # ------------------------------------------------------------------
    # Verdict
    # ------------------------------------------------------------------

    @property
    def anomaly_count(self) -> int:
        return len(self.ledger)

    @property
    def has_anomalies(self) -> bool:
        return self.anomaly_count > 0

    def is_anomalous(self, values) -> bool:
        """Anomaly rule for one key's distinct in-transaction observations."""
        return len(values) > 1

    def describe_anomaly(self, key, values) -> str:
        return f"Observed inconsistent values for key {key}: {list(values)}"

    def anomaly_subject(self) -> str:
        return "keys with anomalies"

    def hint_clean(self) -> str:
        return "To observe anomalies, try read-committed without locking (ex: --isolation rc)"

    def hint_anomalies(self) -> str:
        return "To avoid anomalies, try a higher isolation level or row locking"

    # ------------------------------------------------------------------
    # Helpers for subclasses
    # ------------------------------------------------------------------

    def random(self) -> float:
        """Uniform draw in [0, 1) from a per-thread generator."""
        rng = getattr(self._local, "rng", None)
        if rng is None:
            with self._seed_lock:
                seed = self._next_seed
                if self._next_seed is not None:
                    self._next_seed += 1
            rng = np.random.RandomState(seed)
            self._local.rng = rng
        return float(rng.random_sample())

    def choose(self, items: Sequence):
        return items[min(int(self.random() * len(items)), len(items) - 1)]

    def is_read(self) -> bool:
        return self.random() < self.settings.read_write_ratio

    def transact(self, unit_of_work: Callable[[], object], operation: str = "") -> List[float]:
        """Run unit_of_work through the wrapper and return attempt durations.

        Durations are also recorded in self.stats under `operation`. A
        transaction that gives up after cas_attempts failed CAS writes is
        rolled back and counted, not propagated.
        """
        durations: List[float] = []

        def on_durations(attempts: List[float]) -> None:
            durations.extend(attempts)
            self.stats.record(attempts, operation)

        try:
            self.wrapper.execute(unit_of_work, on_durations)
        except OptimisticLockError as e:
            self.counters.increment("cas_aborts")
            logger.debug(f"Transaction rolled back after repeated CAS failures: {e}")
        return durations

    def final_read(self, reporter: Reporter, unit_of_work: Callable[[], object]):
        """Run a teardown read; on a store failure report it and return None.

        The failure is kept in teardown_errors so the run still counts as
        failed, but the consistency report is rendered either way.
        """
        try:
            return self.wrapper.execute(unit_of_work, lambda durations: None)
        except TxChaosError as e:
            logger.error(f"Final consistency read failed: {e}", exc_info=True)
            reporter.error(f"Final consistency read failed: {e}")
            self.teardown_errors.append(f"{type(e).__name__}: {e}")
            return None

    def apply_delta(self, account_id: AccountId, delta: Decimal,
                    read: Optional[Account] = None) -> Account:
        """Add delta to one account inside the current transaction.

        With optimistic locking, the write is a compare-and-swap against the
        version that was read; a mismatch is counted as prevented, the row is
        re-read and the delta re-applied. Without it, the write blindly stores
        read.balance + delta, which is exactly what loses updates under weak
        isolation when `read` is stale.
        """
        lock_mode = self.settings.lock_mode
        account = read if read is not None else self.repository.find_by_id(account_id, lock_mode)

        if not self.settings.optimistic_locking:
            updated = account.add_balance(delta)
            self.repository.update_balance(updated)
            return updated

        for attempt in range(1, self.settings.cas_attempts + 1):
            updated = account.add_balance(delta)
            try:
                self.repository.update_balance_cas(updated)
                return updated
            except OptimisticLockError:
                self.counters.increment("prevented")
                if attempt == self.settings.cas_attempts:
                    raise
                account = self.repository.find_by_id(account_id, lock_mode)
        raise AssertionError("unreachable")

    def transfer(self, source: AccountId, target: AccountId, amount: Decimal) -> None:
        """Move amount from source to target inside the current transaction.

        Both rows are read first (with the configured lock mode), then written,
        each step in account-id order.
        """
        lock_mode = self.settings.lock_mode
        ordered = sorted((source, target))
        reads = {i: self.repository.find_by_id(i, lock_mode) for i in ordered}
        deltas = {source: -amount, target: amount}
        for account_id in ordered:
            self.apply_delta(account_id, deltas[account_id], read=reads[account_id])

    def read_sum(self, ids: Sequence[AccountId]) -> Decimal:
        lock_mode = self.settings.lock_mode
        return sum(
            (self.repository.find_by_id(i, lock_mode).balance for i in ids),
            Decimal(0),
        )

    def target_pairs(self) -> List[tuple]:
        """Disjoint consecutive pairs of target account ids."""
        ids = [a.id for a in self.accounts]
        return [(ids[i], ids[i + 1]) for i in range(0, len(ids) - 1, 2)]
