"""PostgreSQL / CockroachDB store backed by psycopg.

Each worker thread owns one connection, opened lazily and configured with
the requested isolation level. Statements run inside the transaction opened
by PsycopgStore.transaction(); driver errors are translated into the
harness error taxonomy so that only serialization failures get retried.

Expected schema (not created here):

    create table account (
        id      int            not null,
        type    varchar(64)    not null,
        version int            not null default 0,
        balance numeric(19, 2) not null,
        name    varchar(128),
        primary key (id, type)
    );
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from decimal import Decimal
from typing import Iterator, List

import psycopg

from txchaos.errors import (
    AccountNotFoundError,
    ConnectivityError,
    ConstraintViolationError,
    OptimisticLockError,
    RetryableConflictError,
)
from txchaos.model import Account, AccountId
from txchaos.repository import AccountRepository
from txchaos.store import IsolationLevel, LockMode, Store

logger = logging.getLogger(__name__)

# SQLSTATE codes signalling that the transaction may succeed if retried
RETRYABLE_SQLSTATES = frozenset({"40001", "40P01"})

_ISOLATION = {
    IsolationLevel.READ_COMMITTED: psycopg.IsolationLevel.READ_COMMITTED,
    IsolationLevel.REPEATABLE_READ: psycopg.IsolationLevel.REPEATABLE_READ,
    IsolationLevel.SERIALIZABLE: psycopg.IsolationLevel.SERIALIZABLE,
}

_LOCK_CLAUSE = {
    LockMode.NONE: "",
    LockMode.FOR_SHARE: " FOR SHARE",
    LockMode.FOR_UPDATE: " FOR UPDATE",
}

_COLUMNS = "id, type, version, balance, name"


def lock_clause(lock_mode: LockMode) -> str:
    return _LOCK_CLAUSE[lock_mode]


def translate_error(exc: psycopg.Error) -> Exception:
    """Map a driver error onto the harness error taxonomy."""
    if exc.sqlstate in RETRYABLE_SQLSTATES:
        return RetryableConflictError(str(exc))
    if isinstance(exc, psycopg.IntegrityError):
        return ConstraintViolationError(str(exc))
    if isinstance(exc, psycopg.OperationalError):
        return ConnectivityError(str(exc))
    return exc


class PsycopgStore(Store):

    def __init__(self, dsn: str, isolation: IsolationLevel = IsolationLevel.SERIALIZABLE):
        self._dsn = dsn
        self._isolation = isolation
        self._local = threading.local()
        self._connections: list[psycopg.Connection] = []
        self._connections_lock = threading.Lock()

    @property
    def isolation(self) -> IsolationLevel:
        return self._isolation

    def connection(self) -> psycopg.Connection:
        """Connection owned by the calling thread."""
        conn = getattr(self._local, "conn", None)
        if conn is None or conn.closed:
            try:
                conn = psycopg.connect(self._dsn, autocommit=True)
            except psycopg.OperationalError as e:
                raise ConnectivityError(str(e)) from e
            conn.isolation_level = _ISOLATION[self._isolation]
            self._local.conn = conn
            with self._connections_lock:
                self._connections.append(conn)
            logger.debug(f"Opened connection ({self._isolation.value}) "
                         f"for {threading.current_thread().name}")
        return conn

    @contextmanager
    def transaction(self) -> Iterator[None]:
        conn = self.connection()
        try:
            with conn.transaction():
                yield
        except psycopg.Error as e:
            translated = translate_error(e)
            if translated is e:
                raise
            raise translated from e

    def close(self) -> None:
        with self._connections_lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()


class PsycopgAccountRepository(AccountRepository):

    def __init__(self, store: PsycopgStore):
        self._store = store

    def _cursor(self) -> psycopg.Cursor:
        return self._store.connection().cursor()

    @staticmethod
    def _to_account(row) -> Account:
        return Account(
            id=AccountId(group=row[0], discriminator=row[1]),
            version=row[2],
            balance=Decimal(row[3]),
            name=row[4] or "",
        )

    def find_by_id(self, account_id: AccountId, lock_mode: LockMode = LockMode.NONE) -> Account:
        with self._cursor() as cur:
            cur.execute(
                f"SELECT {_COLUMNS} FROM account WHERE id = %s AND type = %s"
                + lock_clause(lock_mode),
                (account_id.group, account_id.discriminator),
            )
            row = cur.fetchone()
        if row is None:
            raise AccountNotFoundError(account_id)
        return self._to_account(row)

    def find_target_accounts(self, selection: int, random_selection: bool) -> List[Account]:
        order = "random()" if random_selection else "id, type"
        with self._cursor() as cur:
            cur.execute(
                f"SELECT {_COLUMNS} FROM account ORDER BY {order} LIMIT %s",
                (selection,),
            )
            rows = cur.fetchall()
        return sorted((self._to_account(r) for r in rows), key=lambda a: a.id)

    def find_accounts_by_group(self, group: int, lock_mode: LockMode = LockMode.NONE) -> List[Account]:
        with self._cursor() as cur:
            cur.execute(
                f"SELECT {_COLUMNS} FROM account WHERE id = %s ORDER BY type"
                + lock_clause(lock_mode),
                (group,),
            )
            return [self._to_account(r) for r in cur.fetchall()]

    def update_balance(self, account: Account) -> None:
        with self._cursor() as cur:
            cur.execute(
                "UPDATE account SET balance = %s, version = version + 1 "
                "WHERE id = %s AND type = %s",
                (account.balance, account.id.group, account.id.discriminator),
            )
            if cur.rowcount != 1:
                raise AccountNotFoundError(account.id)

    def update_balance_cas(self, account: Account) -> None:
        with self._cursor() as cur:
            cur.execute(
                "UPDATE account SET balance = %s, version = version + 1 "
                "WHERE id = %s AND type = %s AND version = %s",
                (account.balance, account.id.group, account.id.discriminator,
                 account.version),
            )
            if cur.rowcount == 1:
                return
            cur.execute(
                "SELECT version FROM account WHERE id = %s AND type = %s",
                (account.id.group, account.id.discriminator),
            )
            row = cur.fetchone()
        if row is None:
            raise AccountNotFoundError(account.id)
        raise OptimisticLockError(account.id, account.version, row[0])

    def create_account(self, account: Account) -> None:
        with self._cursor() as cur:
            cur.execute(
                f"INSERT INTO account ({_COLUMNS}) VALUES (%s, %s, %s, %s, %s)",
                (account.id.group, account.id.discriminator, account.version,
                 account.balance, account.name),
            )

    def delete_account(self, account_id: AccountId) -> bool:
        with self._cursor() as cur:
            cur.execute(
                "DELETE FROM account WHERE id = %s AND type = %s",
                (account_id.group, account_id.discriminator),
            )
            return cur.rowcount > 0
