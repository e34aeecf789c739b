"""Account repository contract.

Every method runs inside the transaction the calling thread currently holds
(see Store.transaction()). Any method may raise RetryableConflictError;
only the TransactionWrapper interprets it.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List

from txchaos.model import Account, AccountId
from txchaos.store import LockMode


class AccountRepository(ABC):

    @abstractmethod
    def find_by_id(self, account_id: AccountId, lock_mode: LockMode = LockMode.NONE) -> Account:
        """Read one account. Raises AccountNotFoundError when absent."""
        ...

    @abstractmethod
    def find_target_accounts(self, selection: int, random_selection: bool) -> List[Account]:
        """Select the working set for a run, ordered by account id.

        Args:
            selection: Number of accounts to return (fewer if the store has fewer).
            random_selection: Sample randomly instead of taking the first rows.
        """
        ...

    @abstractmethod
    def find_accounts_by_group(self, group: int, lock_mode: LockMode = LockMode.NONE) -> List[Account]:
        """Predicate read: all accounts sharing a group id."""
        ...

    @abstractmethod
    def update_balance(self, account: Account) -> None:
        """Unconditional write of account.balance."""
        ...

    @abstractmethod
    def update_balance_cas(self, account: Account) -> None:
        """Write account.balance only if the stored version equals account.version.

        Raises OptimisticLockError on mismatch.
        """
        ...

    @abstractmethod
    def create_account(self, account: Account) -> None:
        ...

    @abstractmethod
    def delete_account(self, account_id: AccountId) -> bool:
        """Delete by id. Returns False when no row matched."""
        ...
