"""
Account store: balances with versioned compare-and-set updates, the
append-only ledger, and the idempotency records written alongside them.
"""

import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Iterator, Optional

import structlog

from .errors import AccountNotFoundError, DuplicateRequestError, VersionConflictError
from .models import Account, BalanceWrite, IdempotencyRecord, LedgerEntry

logger = structlog.get_logger()


class AccountStore(ABC):
    def get(self, account_id: str) -> Account:
        account = self.find(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        return account

    @abstractmethod
    def find(self, account_id: str) -> Optional[Account]:
        ...

    @abstractmethod
    def compare_and_set(self, account_id: str, expected_version: int, new_balance: int) -> Account:
        """Write ``new_balance`` if the account is still at ``expected_version``.

        ``expected_version=0`` opens the account. Raises VersionConflictError
        otherwise.
        """

    @abstractmethod
    def commit(self, writes: list[BalanceWrite], entry: LedgerEntry, record: IdempotencyRecord) -> list[Account]:
        """Apply every write, append ``entry`` and store ``record`` as one unit.

        Raises VersionConflictError or DuplicateRequestError with nothing
        changed.
        """

    @abstractmethod
    def get_record(self, key: str) -> Optional[IdempotencyRecord]:
        ...

    @abstractmethod
    def list_entries(self, account_id: str, limit: int = 50, offset: int = 0) -> list[LedgerEntry]:
        ...

    @abstractmethod
    def count_entries(self, account_id: str) -> int:
        ...

    def close(self) -> None:
        pass


class InMemoryAccountStore(AccountStore):
    """Process-local store. Locks only the accounts a commit touches."""

    def __init__(self):
        self.accounts: dict[str, Account] = {}
        self.entries: list[LedgerEntry] = []
        self.records: dict[str, IdempotencyRecord] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._records_guard = threading.Lock()

    def _lock_for(self, name: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(name, threading.Lock())

    @contextmanager
    def _locked(self, names: list[str]) -> Iterator[None]:
        # sorted acquisition order keeps overlapping commits deadlock free
        locks = [self._lock_for(name) for name in sorted(set(names))]
        for lock in locks:
            lock.acquire()
        try:
            yield
        finally:
            for lock in reversed(locks):
                lock.release()

    def find(self, account_id: str) -> Optional[Account]:
        return self.accounts.get(account_id)

    def _check(self, write: BalanceWrite) -> Account:
        current = self.accounts.get(write.account_id)
        actual = current.version if current else 0
        if actual != write.expected_version:
            raise VersionConflictError(write.account_id, write.expected_version, actual)
        return Account(id=write.account_id, balance=write.new_balance, version=actual + 1)

    def compare_and_set(self, account_id: str, expected_version: int, new_balance: int) -> Account:
        write = BalanceWrite(account_id=account_id, expected_version=expected_version, new_balance=new_balance)
        with self._locked([f"account:{account_id}"]):
            updated = self._check(write)
            self.accounts[account_id] = updated
        return updated

    def commit(self, writes: list[BalanceWrite], entry: LedgerEntry, record: IdempotencyRecord) -> list[Account]:
        with self._locked([f"account:{w.account_id}" for w in writes]):
            if record.key in self.records:
                raise DuplicateRequestError(record.key)
            # validate every write before touching anything
            updated = [self._check(w) for w in writes]
            # commits on disjoint accounts can share a key, so claim it atomically
            with self._records_guard:
                if record.key in self.records:
                    raise DuplicateRequestError(record.key)
                self.records[record.key] = record
            for account in updated:
                self.accounts[account.id] = account
            self.entries.append(entry)
        return updated

    def get_record(self, key: str) -> Optional[IdempotencyRecord]:
        return self.records.get(key)

    def list_entries(self, account_id: str, limit: int = 50, offset: int = 0) -> list[LedgerEntry]:
        matching = [e for e in self.entries if e.touches(account_id)]
        matching.sort(key=lambda e: e.committed_at, reverse=True)
        return matching[offset:offset + limit]

    def count_entries(self, account_id: str) -> int:
        return sum(1 for e in self.entries if e.touches(account_id))


def build_store(database_url: Optional[str]) -> Optional[AccountStore]:
    """Create the store named by ``database_url``; None when unconfigured."""
    if not database_url:
        logger.warning("ledger_unconfigured")
        return None
    if database_url.startswith("memory://"):
        logger.info("ledger_store_ready", backend="memory")
        return InMemoryAccountStore()

    from .sql_store import SqlAccountStore

    return SqlAccountStore(database_url)
