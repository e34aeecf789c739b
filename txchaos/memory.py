"""In-process account store with simulated isolation levels.

Used by the test suite and by `txchaos --store memory` to exercise the
harness without a database. It models just enough of a real engine for the
classical anomalies to appear (or not) the way they do on a real store:

- READ_COMMITTED: every statement sees the latest committed row plus the
  transaction's own writes. Writers take exclusive row locks held until
  commit, but nothing checks whether the row changed since it was read, so
  read-modify-write cycles lose updates.
- REPEATABLE_READ: snapshot isolation. Reads come from a snapshot taken at
  begin. Writing or locking a row that changed after the snapshot raises
  RetryableConflictError (first updater wins). Predicate reads see no
  phantoms; write skew is still possible.
- SERIALIZABLE: transactions run one at a time.

Row locks are shared (FOR SHARE) or exclusive (FOR UPDATE and all writes).
A lock wait that exceeds lock_timeout_s raises RetryableConflictError,
which is how deadlocks resolve.

Key types:
- InMemoryStore: Committed rows, lock table, thread-bound transactions
- InMemoryAccountRepository: AccountRepository over an InMemoryStore
- generate_accounts(): Seed data for a store
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import replace
from decimal import Decimal
from typing import Dict, Iterator, List, Optional, Sequence

import numpy as np

from txchaos.errors import (
    AccountNotFoundError,
    ConstraintViolationError,
    OptimisticLockError,
    RetryableConflictError,
)
from txchaos.latency import StatementLatency
from txchaos.model import Account, AccountId
from txchaos.repository import AccountRepository
from txchaos.store import IsolationLevel, LockMode, Store

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Internal transaction and lock state
# ---------------------------------------------------------------------------

class _Txn:
    """Internal per-transaction state. Never exposed outside this module."""
    __slots__ = ("txn_id", "snapshot", "writes", "locks")

    def __init__(self, txn_id: int, snapshot: Optional[Dict[AccountId, Account]]):
        self.txn_id = txn_id
        self.snapshot = snapshot                          # None under READ_COMMITTED
        self.writes: Dict[AccountId, Optional[Account]] = {}  # None marks a delete
        self.locks: set[AccountId] = set()

    def __repr__(self) -> str:
        return f"_Txn({self.txn_id})"


class _RowLock:
    __slots__ = ("exclusive", "shared")

    def __init__(self):
        self.exclusive: Optional[_Txn] = None
        self.shared: set[_Txn] = set()

    def blocks(self, txn: _Txn, exclusive: bool) -> bool:
        if self.exclusive is not None and self.exclusive is not txn:
            return True
        return exclusive and bool(self.shared - {txn})

    def is_free(self) -> bool:
        return self.exclusive is None and not self.shared


# ---------------------------------------------------------------------------
# Seed data
# ---------------------------------------------------------------------------

def generate_accounts(
    n_accounts: int,
    n_groups: int = 1,
    initial_balance: Decimal = Decimal("100.00"),
) -> List[Account]:
    """Generate n_accounts spread round-robin over n_groups."""
    if n_groups <= 0:
        raise ValueError(f"n_groups must be positive, got {n_groups}")
    return [
        Account(
            id=AccountId(group=i % n_groups, discriminator=f"acct-{i:06d}"),
            balance=Decimal(initial_balance),
            name=f"user:{i}",
        )
        for i in range(n_accounts)
    ]


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class InMemoryStore(Store):
    """Committed rows plus a lock table, guarded by one condition variable.

    The methods below transaction() form the engine API used by
    InMemoryAccountRepository. Callers of visible(), acquire() and
    check_unchanged() must hold `mutex`.
    """

    def __init__(
        self,
        isolation: IsolationLevel = IsolationLevel.READ_COMMITTED,
        accounts: Sequence[Account] = (),
        lock_timeout_s: float = 2.0,
        statement_latency: Optional[StatementLatency] = None,
        seed: Optional[int] = None,
    ):
        self._isolation = isolation
        self._rows: Dict[AccountId, Account] = {a.id: a for a in accounts}
        self._row_locks: Dict[AccountId, _RowLock] = {}
        self._lock_timeout_s = lock_timeout_s
        self._latency = statement_latency
        self._local = threading.local()
        self._serial = threading.Lock()
        self._txn_ids = itertools.count(1)
        self._rng = np.random.RandomState(seed)
        self._rng_lock = threading.Lock()
        self.mutex = threading.Condition()

        self.commits = 0
        self.rollbacks = 0

    @property
    def isolation(self) -> IsolationLevel:
        return self._isolation

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[None]:
        if getattr(self._local, "txn", None) is not None:
            raise RuntimeError("Nested transactions are not supported")

        serial = self._isolation is IsolationLevel.SERIALIZABLE
        if serial:
            self._serial.acquire()
        try:
            with self.mutex:
                snapshot = None
                if self._isolation is not IsolationLevel.READ_COMMITTED:
                    snapshot = dict(self._rows)
                txn = _Txn(next(self._txn_ids), snapshot)
            self._local.txn = txn
            try:
                yield
            except BaseException:
                self._finish(txn, commit=False)
                raise
            else:
                self._finish(txn, commit=True)
        finally:
            self._local.txn = None
            if serial:
                self._serial.release()

    def _finish(self, txn: _Txn, commit: bool) -> None:
        with self.mutex:
            if commit:
                for account_id, row in txn.writes.items():
                    if row is None:
                        self._rows.pop(account_id, None)
                    else:
                        self._rows[account_id] = row
                self.commits += 1
            else:
                self.rollbacks += 1
            for account_id in txn.locks:
                lock = self._row_locks.get(account_id)
                if lock is None:
                    continue
                if lock.exclusive is txn:
                    lock.exclusive = None
                lock.shared.discard(txn)
                if lock.is_free():
                    del self._row_locks[account_id]
            self.mutex.notify_all()
        logger.debug(f"TXN {txn.txn_id} {'commit' if commit else 'rollback'} "
                     f"({len(txn.writes)} writes)")

    def current(self) -> _Txn:
        txn = getattr(self._local, "txn", None)
        if txn is None:
            raise RuntimeError("No transaction bound to the current thread")
        return txn

    # ------------------------------------------------------------------
    # Engine API (used by InMemoryAccountRepository)
    # ------------------------------------------------------------------

    def pause(self) -> None:
        """Sleep for one sampled statement latency."""
        if self._latency is None:
            return
        with self._rng_lock:
            delay = self._latency.delay_s(self._rng)
        if delay > 0:
            time.sleep(delay)

    def sample_indices(self, population: int, size: int) -> List[int]:
        with self._rng_lock:
            chosen = self._rng.choice(population, size=size, replace=False)
        return sorted(int(i) for i in chosen)

    def visible(self, txn: _Txn, account_id: AccountId) -> Optional[Account]:
        if account_id in txn.writes:
            return txn.writes[account_id]
        if txn.snapshot is None:
            return self._rows.get(account_id)
        return txn.snapshot.get(account_id)

    def visible_ids(self, txn: _Txn) -> set[AccountId]:
        base = self._rows if txn.snapshot is None else txn.snapshot
        return set(base) | set(txn.writes)

    def committed_exists(self, account_id: AccountId) -> bool:
        return account_id in self._rows

    def acquire(self, txn: _Txn, account_id: AccountId, lock_mode: LockMode) -> None:
        """Take a row lock, waiting up to lock_timeout_s."""
        if lock_mode is LockMode.NONE:
            return
        exclusive = lock_mode is LockMode.FOR_UPDATE
        deadline = time.monotonic() + self._lock_timeout_s
        while True:
            lock = self._row_locks.setdefault(account_id, _RowLock())
            if not lock.blocks(txn, exclusive):
                break
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                if lock.is_free():
                    del self._row_locks[account_id]
                raise RetryableConflictError(
                    f"lock wait timeout on account {account_id} (txn {txn.txn_id})"
                )
            self.mutex.wait(remaining)

        if exclusive:
            lock.exclusive = txn
        elif lock.exclusive is not txn:
            lock.shared.add(txn)
        txn.locks.add(account_id)

    def check_unchanged(self, txn: _Txn, account_id: AccountId) -> None:
        """First-updater-wins check for snapshot transactions."""
        if txn.snapshot is None or account_id in txn.writes:
            return
        if self._rows.get(account_id) is not txn.snapshot.get(account_id):
            raise RetryableConflictError(
                f"could not serialize access due to concurrent update of {account_id}"
            )

    # ------------------------------------------------------------------
    # Inspection (outside transactions)
    # ------------------------------------------------------------------

    def committed(self, account_id: AccountId) -> Optional[Account]:
        with self.mutex:
            return self._rows.get(account_id)

    def accounts(self) -> List[Account]:
        with self.mutex:
            return sorted(self._rows.values(), key=lambda a: a.id)

    def total_balance(self) -> Decimal:
        return sum((a.balance for a in self.accounts()), Decimal(0))


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------

class InMemoryAccountRepository(AccountRepository):

    def __init__(self, store: InMemoryStore):
        self._store = store

    def _write_lock(self, txn: _Txn, account_id: AccountId) -> None:
        self._store.acquire(txn, account_id, LockMode.FOR_UPDATE)
        self._store.check_unchanged(txn, account_id)

    def find_by_id(self, account_id: AccountId, lock_mode: LockMode = LockMode.NONE) -> Account:
        store = self._store
        txn = store.current()
        store.pause()
        with store.mutex:
            if lock_mode is not LockMode.NONE:
                store.acquire(txn, account_id, lock_mode)
                store.check_unchanged(txn, account_id)
            account = store.visible(txn, account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        return account

    def find_target_accounts(self, selection: int, random_selection: bool) -> List[Account]:
        store = self._store
        txn = store.current()
        store.pause()
        with store.mutex:
            rows = [store.visible(txn, i) for i in sorted(store.visible_ids(txn))]
        rows = [r for r in rows if r is not None]
        n = min(selection, len(rows))
        if random_selection:
            return [rows[i] for i in store.sample_indices(len(rows), n)]
        return rows[:n]

    def find_accounts_by_group(self, group: int, lock_mode: LockMode = LockMode.NONE) -> List[Account]:
        store = self._store
        txn = store.current()
        store.pause()
        with store.mutex:
            ids = sorted(i for i in store.visible_ids(txn) if i.group == group)
            if lock_mode is not LockMode.NONE:
                for account_id in ids:
                    if store.visible(txn, account_id) is None:
                        continue
                    store.acquire(txn, account_id, lock_mode)
                    store.check_unchanged(txn, account_id)
            rows = [store.visible(txn, i) for i in ids]
        return [r for r in rows if r is not None]

    def update_balance(self, account: Account) -> None:
        store = self._store
        txn = store.current()
        store.pause()
        with store.mutex:
            self._write_lock(txn, account.id)
            current = store.visible(txn, account.id)
            if current is None:
                raise AccountNotFoundError(account.id)
            txn.writes[account.id] = replace(
                current, balance=account.balance, version=current.version + 1,
            )

    def update_balance_cas(self, account: Account) -> None:
        store = self._store
        txn = store.current()
        store.pause()
        with store.mutex:
            self._write_lock(txn, account.id)
            current = store.visible(txn, account.id)
            if current is None:
                raise AccountNotFoundError(account.id)
            if current.version != account.version:
                raise OptimisticLockError(account.id, account.version, current.version)
            txn.writes[account.id] = replace(
                current, balance=account.balance, version=current.version + 1,
            )

    def create_account(self, account: Account) -> None:
        store = self._store
        txn = store.current()
        store.pause()
        with store.mutex:
            store.acquire(txn, account.id, LockMode.FOR_UPDATE)
            exists = store.visible(txn, account.id) is not None
            if account.id not in txn.writes and store.committed_exists(account.id):
                exists = True
            if exists:
                raise ConstraintViolationError(f"duplicate key: account {account.id}")
            txn.writes[account.id] = account

    def delete_account(self, account_id: AccountId) -> bool:
        store = self._store
        txn = store.current()
        store.pause()
        with store.mutex:
            self._write_lock(txn, account_id)
            if store.visible(txn, account_id) is None:
                return False
            txn.writes[account_id] = None
            return True
