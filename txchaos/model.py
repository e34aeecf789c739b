"""Account entity used by every workload.

Accounts are immutable. A workload reads an Account, derives a new one with
with_balance()/add_balance(), and hands it back to the repository. The
version travels with the copy so that compare-and-swap writes can check it.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import Decimal
from functools import total_ordering


@total_ordering
@dataclass(frozen=True)
class AccountId:
    """Composite key: shard/group identifier plus a unique discriminator."""
    group: int
    discriminator: str

    def __lt__(self, other: AccountId) -> bool:
        if not isinstance(other, AccountId):
            return NotImplemented
        return (self.group, self.discriminator) < (other.group, other.discriminator)

    def __str__(self) -> str:
        return f"{self.group}/{self.discriminator}"


@dataclass(frozen=True)
class Account:
    id: AccountId
    balance: Decimal
    name: str = ""
    version: int = 0

    def with_balance(self, balance: Decimal) -> Account:
        return replace(self, balance=Decimal(balance))

    def add_balance(self, delta: Decimal) -> Account:
        return replace(self, balance=self.balance + Decimal(delta))
