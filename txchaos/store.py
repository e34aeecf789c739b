"""Store session contract.

A Store hands out transactions bound to the calling thread. Repositories
never open transactions themselves; they run their statements inside
whatever transaction the current thread holds.

Key types:
- IsolationLevel: Isolation level requested from the store
- LockMode: Row lock requested by a read
- Store: ABC with transaction() context manager
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from enum import Enum


class IsolationLevel(Enum):
    READ_COMMITTED = "read_committed"
    REPEATABLE_READ = "repeatable_read"
    SERIALIZABLE = "serializable"

    @classmethod
    def parse(cls, value: str) -> IsolationLevel:
        aliases = {"rc": "read_committed", "rr": "repeatable_read",
                   "si": "repeatable_read", "1sr": "serializable"}
        value = value.lower().replace("-", "_").replace(" ", "_")
        return cls(aliases.get(value, value))


class LockMode(Enum):
    NONE = "none"
    FOR_SHARE = "for_share"
    FOR_UPDATE = "for_update"

    @classmethod
    def parse(cls, value: str) -> LockMode:
        return cls(value.lower().replace("-", "_").replace(" ", "_"))


class Store(ABC):
    """Source of thread-bound transactions."""

    @property
    @abstractmethod
    def isolation(self) -> IsolationLevel:
        ...

    @abstractmethod
    def transaction(self) -> AbstractContextManager[None]:
        """Begin a transaction bound to the calling thread.

        Commits on normal exit and rolls back when the block raises.
        Conflicts detected at statement or commit time are raised as
        RetryableConflictError.
        """
        ...

    def close(self) -> None:
        """Release any held connections."""
