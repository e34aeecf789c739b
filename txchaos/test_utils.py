"""Test utilities for txchaos.

Provides a recording reporter and a builder for in-memory workloads so tests
can set up a scenario with minimal boilerplate.
"""

from dataclasses import replace
from decimal import Decimal
from typing import List, Optional, Tuple

from txchaos.config import Settings, StoreSettings
from txchaos.latency import FixedLatency
from txchaos.memory import InMemoryAccountRepository, InMemoryStore, generate_accounts
from txchaos.reporter import Reporter
from txchaos.scenarios import WorkloadType
from txchaos.store import IsolationLevel, LockMode
from txchaos.transaction import NO_BACKOFF, TransactionWrapper
from txchaos.workload import Workload


class RecordingReporter(Reporter):
    """Reporter that keeps every call for assertions."""

    def __init__(self):
        self.lines: List[Tuple[str, str]] = []

    def header(self, title: str) -> None:
        self.lines.append(("header", title))

    def info(self, text: str) -> None:
        self.lines.append(("info", text))

    def error(self, text: str) -> None:
        self.lines.append(("error", text))

    def print_left(self, label: str, value: str) -> None:
        self.lines.append(("print_left", f"{label}: {value}"))

    def texts(self, kind: Optional[str] = None) -> List[str]:
        return [text for k, text in self.lines if kind is None or k == kind]

    def contains(self, fragment: str) -> bool:
        return any(fragment in text for text in self.texts())


def make_store(
    n_accounts: int = 10,
    n_groups: int = 1,
    isolation: IsolationLevel = IsolationLevel.READ_COMMITTED,
    initial_balance: Decimal = Decimal("100.00"),
    latency_ms: float = 0.0,
    lock_timeout_s: float = 2.0,
    seed: int = 42,
) -> Tuple[InMemoryStore, InMemoryAccountRepository]:
    """In-memory store seeded with generated accounts, plus its repository."""
    store = InMemoryStore(
        isolation=isolation,
        accounts=generate_accounts(n_accounts, n_groups, initial_balance),
        lock_timeout_s=lock_timeout_s,
        statement_latency=FixedLatency(latency_ms) if latency_ms > 0 else None,
        seed=seed,
    )
    return store, InMemoryAccountRepository(store)


def make_settings(workload: str = "non_repeatable_read", **overrides) -> Settings:
    """Settings with test-friendly defaults: small runs, no backoff, seeded."""
    defaults = dict(
        workload=workload,
        selection=2,
        repeated_reads=3,
        concurrency=4,
        duration_s=None,
        iterations=40,
        backoff=NO_BACKOFF,
        seed=42,
        store=StoreSettings(),
    )
    defaults.update(overrides)
    return Settings(**defaults)


class WorkloadBuilder:
    """Builder for a workload wired to a fresh in-memory store.

    Example:
        workload, store = (WorkloadBuilder("lost_update")
            .with_isolation(IsolationLevel.READ_COMMITTED)
            .with_settings(selection=2, read_write_ratio=0.0)
            .with_latency(0.5)
            .build())
    """

    def __init__(self, workload: str):
        self._workload = workload
        self._isolation = IsolationLevel.READ_COMMITTED
        self._n_accounts = 10
        self._n_groups = 1
        self._latency_ms = 0.0
        self._lock_timeout_s = 2.0
        self._max_retries: Optional[int] = 100
        self._settings = {}

    def with_isolation(self, isolation: IsolationLevel) -> 'WorkloadBuilder':
        self._isolation = isolation
        return self

    def with_accounts(self, n: int, groups: int = 1) -> 'WorkloadBuilder':
        self._n_accounts = n
        self._n_groups = groups
        return self

    def with_latency(self, latency_ms: float) -> 'WorkloadBuilder':
        """Fixed per-statement latency; widens interleaving windows."""
        self._latency_ms = latency_ms
        return self

    def with_lock_timeout(self, seconds: float) -> 'WorkloadBuilder':
        self._lock_timeout_s = seconds
        return self

    def with_max_retries(self, max_retries: Optional[int]) -> 'WorkloadBuilder':
        self._max_retries = max_retries
        return self

    def with_locking(self, lock_mode: LockMode = LockMode.NONE,
                     optimistic: bool = False) -> 'WorkloadBuilder':
        self._settings.update(lock_mode=lock_mode, optimistic_locking=optimistic)
        return self

    def with_settings(self, **kwargs) -> 'WorkloadBuilder':
        self._settings.update(kwargs)
        return self

    def build(self) -> Tuple[Workload, InMemoryStore]:
        store, repository = make_store(
            n_accounts=self._n_accounts,
            n_groups=self._n_groups,
            isolation=self._isolation,
            latency_ms=self._latency_ms,
            lock_timeout_s=self._lock_timeout_s,
        )
        settings = make_settings(self._workload, **self._settings)
        settings = replace(settings, store=replace(settings.store, isolation=self._isolation))
        wrapper = TransactionWrapper(store, max_retries=self._max_retries, backoff=NO_BACKOFF)
        workload = WorkloadType.parse(self._workload).create(settings, repository, wrapper)
        return workload, store
