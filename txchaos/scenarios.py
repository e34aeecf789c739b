"""Anomaly scenarios.

Each scenario pairs a read path that repeats the same query inside one
transaction with a write path that concurrently changes what the query
returns. A read transaction whose repeated results disagree has witnessed
an anomaly the isolation level should have prevented.

Key types (public):
- NonRepeatableRead: repeated point reads vs. increments
- PhantomRead: repeated predicate counts vs. inserts/deletes in the group
- LostUpdate: read-modify-write transfers; total must be conserved
- ReadSkew: pair sums read twice vs. transfers within the pair
- WriteSkew: pair sums must stay non-negative under check-then-withdraw
- WorkloadType: scenario name -> class and description
"""

from __future__ import annotations

import logging
import uuid
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Tuple

from txchaos.errors import OptimisticLockError
from txchaos.model import Account, AccountId
from txchaos.reporter import Reporter
from txchaos.workload import Workload

logger = logging.getLogger(__name__)

ONE = Decimal(1)
TEN = Decimal(10)


def pair_key(pair: Tuple[AccountId, AccountId]) -> str:
    return f"{pair[0]}+{pair[1]}"


# ---------------------------------------------------------------------------
# Non-repeatable read
# ---------------------------------------------------------------------------

class NonRepeatableRead(Workload):
    """Read every target's balance repeatedly while writers increment them."""

    COUNTERS = ("reads", "writes")

    def execute_once(self) -> List[float]:
        if self.is_read():
            return self._read_path()
        return self._write_path()

    def _read_path(self) -> List[float]:
        lock_mode = self.settings.lock_mode
        buffer = self.detector.new_buffer()

        def unit_of_work():
            buffer.reset()
            for _ in range(self.settings.repeated_reads):
                for account in self.accounts:
                    balance = self.repository.find_by_id(account.id, lock_mode).balance
                    buffer.observe(account.id, balance)

        durations = self.transact(unit_of_work, "read")
        self.counters.increment("reads")
        self.detector.check(buffer)
        return durations

    def _write_path(self) -> List[float]:
        def unit_of_work():
            for account in sorted(self.accounts, key=lambda a: a.id):
                self.apply_delta(account.id, ONE)

        durations = self.transact(unit_of_work, "write")
        self.counters.increment("writes")
        return durations

    def describe_anomaly(self, key, values) -> str:
        return f"Observed non-repeatable values for key {key}: {list(values)}"

    def anomaly_subject(self) -> str:
        return "accounts with non-repeatable reads"

    def hint_anomalies(self) -> str:
        return ("To avoid anomalies, try read-committed with locking or repeatable-read "
                "or higher isolation (ex: --locking for_share)")


# ---------------------------------------------------------------------------
# Phantom read
# ---------------------------------------------------------------------------

class PhantomRead(Workload):
    """Count the rows of each target group repeatedly while writers insert or delete."""

    COUNTERS = ("selects", "inserts", "deletes")

    def execute_once(self) -> List[float]:
        if self.is_read():
            return self._select_path()
        if self.random() < self.settings.write_split:
            return self._insert_path()
        return self._delete_path()

    @property
    def groups(self) -> List[int]:
        return sorted({a.id.group for a in self.accounts})

    def _select_path(self) -> List[float]:
        lock_mode = self.settings.lock_mode
        buffer = self.detector.new_buffer()

        def unit_of_work():
            buffer.reset()
            for _ in range(self.settings.repeated_reads):
                for group in self.groups:
                    rows = self.repository.find_accounts_by_group(group, lock_mode)
                    buffer.observe(group, len(rows))

        durations = self.transact(unit_of_work, "select")
        self.counters.increment("selects")
        self.detector.check(buffer)
        return durations

    def _insert_path(self) -> List[float]:
        def unit_of_work():
            for account in sorted(self.accounts, key=lambda a: a.id):
                self.repository.create_account(Account(
                    id=AccountId(account.id.group, uuid.uuid4().hex),
                    balance=TEN,
                    name="New Type",
                ))

        durations = self.transact(unit_of_work, "insert")
        self.counters.increment("inserts")
        return durations

    def _delete_path(self) -> List[float]:
        def unit_of_work():
            for account in sorted(self.accounts, key=lambda a: a.id):
                self.repository.delete_account(account.id)

        durations = self.transact(unit_of_work, "delete")
        self.counters.increment("deletes")
        return durations

    def describe_anomaly(self, key, values) -> str:
        return f"Observed phantom values for key {key}: {list(values)}"

    def anomaly_subject(self) -> str:
        return "groups with phantom reads"

    def hint_anomalies(self) -> str:
        return "To avoid anomalies, try repeatable-read or higher isolation (ex: --isolation rr)"


# ---------------------------------------------------------------------------
# Lost update
# ---------------------------------------------------------------------------

class LostUpdate(Workload):
    """Transfers between random targets; the total of all targets is invariant.

    Without row locks or CAS, two read-modify-write transfers touching the
    same account under read committed overwrite each other and the total
    drifts. The verdict is conservation of the total, checked after the run.
    Readers only add contention: under read committed a reader may sum
    across a committed transfer, which is read skew, not a lost update.
    """

    COUNTERS = ("reads", "transfers")
    MIN_TARGETS = 2

    TOTAL = "total"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.initial_total = Decimal(0)

    def before_all_executions(self) -> None:
        super().before_all_executions()
        self.initial_total = sum((a.balance for a in self.accounts), Decimal(0))

    def execute_once(self) -> List[float]:
        if self.is_read():
            return self._read_path()
        return self._transfer_path()

    def _read_path(self) -> List[float]:
        ids = [a.id for a in self.accounts]
        totals = set()

        def unit_of_work():
            totals.clear()
            for _ in range(self.settings.repeated_reads):
                totals.add(self.read_sum(ids))

        durations = self.transact(unit_of_work, "read")
        self.counters.increment("reads")
        if len(totals) > 1:
            logger.debug(f"Reader saw moving totals {sorted(totals)}")
        return durations

    def _transfer_path(self) -> List[float]:
        source = self.choose(self.accounts).id
        target = self.choose([a for a in self.accounts if a.id != source]).id

        durations = self.transact(
            lambda: self.transfer(source, target, self.settings.amount), "transfer")
        self.counters.increment("transfers")
        return durations

    def after_all_executions(self, reporter: Reporter) -> None:
        ids = [a.id for a in self.accounts]
        final_total = self.final_read(reporter, lambda: self.read_sum(ids))
        if final_total is not None and final_total != self.initial_total:
            logger.info(f"Total drifted from {self.initial_total} to {final_total}")
            self.ledger.record(self.TOTAL, [self.initial_total, final_total])
        reporter.print_left("Initial total", f"{self.initial_total}")
        reporter.print_left("Final total", "unavailable" if final_total is None else f"{final_total}")
        super().after_all_executions(reporter)

    def describe_anomaly(self, key, values) -> str:
        return f"Observed diverging totals for key {key}: {list(values)}"

    def anomaly_subject(self) -> str:
        return "totals with lost updates"

    def hint_anomalies(self) -> str:
        return ("To avoid anomalies, try row locking or optimistic locking "
                "(ex: --locking for_update or --cas)")


# ---------------------------------------------------------------------------
# Read skew
# ---------------------------------------------------------------------------

class ReadSkew(Workload):
    """Sum disjoint account pairs repeatedly while writers transfer within a pair."""

    COUNTERS = ("reads", "transfers")
    MIN_TARGETS = 2

    def execute_once(self) -> List[float]:
        if self.is_read():
            return self._read_path()
        return self._transfer_path()

    def _read_path(self) -> List[float]:
        pairs = self.target_pairs()
        buffer = self.detector.new_buffer()

        def unit_of_work():
            buffer.reset()
            for _ in range(self.settings.repeated_reads):
                for pair in pairs:
                    buffer.observe(pair_key(pair), self.read_sum(pair))

        durations = self.transact(unit_of_work, "read")
        self.counters.increment("reads")
        self.detector.check(buffer)
        return durations

    def _transfer_path(self) -> List[float]:
        first, second = self.choose(self.target_pairs())
        if self.random() < self.settings.write_split:
            source, target = first, second
        else:
            source, target = second, first

        durations = self.transact(
            lambda: self.transfer(source, target, self.settings.amount), "transfer")
        self.counters.increment("transfers")
        return durations

    def describe_anomaly(self, key, values) -> str:
        return f"Observed skewed sums for pair {key}: {list(values)}"

    def anomaly_subject(self) -> str:
        return "pairs with read skew"

    def hint_anomalies(self) -> str:
        return "To avoid anomalies, try repeatable-read or higher isolation (ex: --isolation rr)"


# ---------------------------------------------------------------------------
# Write skew
# ---------------------------------------------------------------------------

class WriteSkew(Workload):
    """Check-then-withdraw on account pairs; a pair's sum must never go negative.

    Each writer reads both members of a pair and, if the combined balance is
    positive, withdraws all of it from one member. Two writers that read the
    same snapshot and pick different members both succeed under snapshot
    isolation, leaving the pair negative.

    With optimistic locking both members are version-checked in id order
    before the withdrawal is written. A mismatch on either member voids the
    decision: the pair is re-read and the withdraw/deposit choice made again.
    """

    COUNTERS = ("reads", "withdrawals", "deposits")
    MIN_TARGETS = 2

    def execute_once(self) -> List[float]:
        if self.is_read():
            return self._read_path()
        return self._withdraw_path()

    def is_anomalous(self, values) -> bool:
        return any(v < 0 for v in values)

    def _read_path(self) -> List[float]:
        pairs = self.target_pairs()
        buffer = self.detector.new_buffer()

        def unit_of_work():
            buffer.reset()
            for _ in range(self.settings.repeated_reads):
                for pair in pairs:
                    total = self._settled_sum(pair)
                    if total is not None:
                        buffer.observe(pair_key(pair), total)

        durations = self.transact(unit_of_work, "read")
        self.counters.increment("reads")
        self.detector.check(buffer)
        return durations

    def _settled_sum(self, pair) -> Optional[Decimal]:
        """Sum of a pair as it stood at one instant, or None.

        The first member is read again after the second. An unchanged version
        means both values coexisted when the second was read; otherwise the
        sum may mix two committed states and is discarded.
        """
        lock_mode = self.settings.lock_mode
        first = self.repository.find_by_id(pair[0], lock_mode)
        second = self.repository.find_by_id(pair[1], lock_mode)
        if self.repository.find_by_id(pair[0], lock_mode).version != first.version:
            return None
        return first.balance + second.balance

    def _withdraw_path(self) -> List[float]:
        pair = self.choose(self.target_pairs())
        member = pair[0] if self.random() < self.settings.write_split else pair[1]
        outcome: Dict[str, str] = {}
        buffer = self.detector.new_buffer()

        def unit_of_work():
            attempts = self.settings.cas_attempts if self.settings.optimistic_locking else 1
            for attempt in range(1, attempts + 1):
                buffer.reset()
                outcome.clear()
                try:
                    self._check_then_write(pair, member, buffer, outcome)
                    return
                except OptimisticLockError:
                    self.counters.increment("prevented")
                    if attempt == attempts:
                        raise

        durations = self.transact(unit_of_work, "write")
        if "kind" in outcome:
            self.counters.increment(outcome["kind"])
            self.detector.check(buffer)
        return durations

    def _check_then_write(self, pair, member, buffer, outcome) -> None:
        lock_mode = self.settings.lock_mode
        reads = {i: self.repository.find_by_id(i, lock_mode) for i in sorted(pair)}
        combined = sum((a.balance for a in reads.values()), Decimal(0))
        # A writer that sees a negative sum has itself witnessed the skew
        buffer.observe(pair_key(pair), combined)
        if combined > 0:
            delta, kind = -combined, "withdrawals"
        else:
            delta, kind = self.settings.amount, "deposits"

        if not self.settings.optimistic_locking:
            self.repository.update_balance(reads[member].add_balance(delta))
        else:
            # Unchanged CAS writes pin both versions before acting on them
            for account_id in sorted(pair):
                self.repository.update_balance_cas(reads[account_id])
            account = self.repository.find_by_id(member, lock_mode)
            self.repository.update_balance(account.add_balance(delta))
        outcome["kind"] = kind

    def after_all_executions(self, reporter: Reporter) -> None:
        pairs = self.target_pairs()
        final = self.final_read(
            reporter, lambda: [(pair, self.read_sum(pair)) for pair in pairs])
        for pair, total in final or []:
            if total < 0:
                logger.info(f"Pair {pair_key(pair)} ended with negative sum {total}")
                self.ledger.record(pair_key(pair), [total])
        super().after_all_executions(reporter)

    def describe_anomaly(self, key, values) -> str:
        return f"Observed write skew for pair {key}: {list(values)}"

    def anomaly_subject(self) -> str:
        return "pairs with write skew"

    def hint_anomalies(self) -> str:
        return ("To avoid anomalies, try serializable isolation or guard both reads "
                "(ex: --isolation 1sr, --locking for_update or --cas)")


# ---------------------------------------------------------------------------
# Metadata
# ---------------------------------------------------------------------------

class WorkloadType(Enum):
    """Scenario name and a one-line description of the anomaly it exposes."""

    LOST_UPDATE = (
        "lost_update",
        "(P4) lost update. Options --locking for_update or --cas required for correct execution in RC.",
    )
    READ_SKEW = (
        "read_skew",
        "(A5A) read skew. Repeatable-read or higher required for correct execution.",
    )
    WRITE_SKEW = (
        "write_skew",
        "(A5B) write skew. Serializable, --locking for_update or --cas required for correct execution.",
    )
    NON_REPEATABLE_READ = (
        "non_repeatable_read",
        "(P2) non-repeatable read. Option --locking for_share or repeatable-read required in RC.",
    )
    PHANTOM_READ = (
        "phantom_read",
        "(P3) phantom read. Repeatable-read or higher required for correct execution.",
    )

    def __init__(self, key: str, note: str):
        self.key = key
        self.note = note

    @classmethod
    def names(cls) -> List[str]:
        return [member.key for member in cls]

    @classmethod
    def parse(cls, key: str) -> WorkloadType:
        for member in cls:
            if member.key == key:
                return member
        raise ValueError(f"Unknown workload type: {key}")

    @property
    def workload_class(self) -> type:
        return _WORKLOAD_CLASSES[self]

    def create(self, settings, repository, wrapper) -> Workload:
        return self.workload_class(settings, repository, wrapper)


_WORKLOAD_CLASSES = {
    WorkloadType.LOST_UPDATE: LostUpdate,
    WorkloadType.READ_SKEW: ReadSkew,
    WorkloadType.WRITE_SKEW: WriteSkew,
    WorkloadType.NON_REPEATABLE_READ: NonRepeatableRead,
    WorkloadType.PHANTOM_READ: PhantomRead,
}
