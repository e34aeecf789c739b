"""Error taxonomy shared by stores, repositories and workloads.

Only RetryableConflictError is interpreted by the transaction wrapper.
OptimisticLockError is handled by workloads and counted as a prevented
anomaly. Everything else is fatal for the worker that raised it.
"""


class TxChaosError(Exception):
    """Base class for all harness errors."""


class RetryableConflictError(TxChaosError):
    """Store could not serialize the transaction; retry it from scratch."""


class OptimisticLockError(TxChaosError):
    """Compare-and-swap precondition failed: the row changed since it was read."""

    def __init__(self, account_id, expected_version: int, actual_version: int | None):
        self.account_id = account_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"CAS mismatch for account {account_id}: "
            f"expected version {expected_version}, found {actual_version}"
        )


class AccountNotFoundError(TxChaosError):
    """Lookup by id returned no row."""

    def __init__(self, account_id):
        self.account_id = account_id
        super().__init__(f"Account not found: {account_id}")


class ConstraintViolationError(TxChaosError):
    """Store rejected a write due to a uniqueness or integrity constraint."""


class ConnectivityError(TxChaosError):
    """Connection to the store was lost or could not be established."""


class RetryLimitExceededError(TxChaosError):
    """A transaction hit the configured retry bound."""

    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(f"Transaction gave up after {attempts} attempts")
