"""
Tests for the account stores (in-memory and SQLite through SQLAlchemy).
"""

import pytest
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from pydantic import ValidationError
from sqlalchemy.exc import OperationalError

from coinledger.errors import AccountNotFoundError, DuplicateRequestError, VersionConflictError
from coinledger.models import BalanceWrite, EntryType, IdempotencyRecord, LedgerEntry
from coinledger.sql_store import SqlAccountStore, is_transient_conflict, parse_database_url
from coinledger.store import InMemoryAccountStore, build_store

NOW = datetime(2026, 3, 14, 12, 0, tzinfo=timezone.utc)

@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        yield InMemoryAccountStore()
        return
    sql_store = SqlAccountStore(f"sqlite:///{tmp_path / 'ledger.db'}")
    yield sql_store
    sql_store.close()

def make_entry(key: str, to_account: str = "creator", from_account="buyer", amount=40, at=NOW) -> LedgerEntry:
    return LedgerEntry(
        id=uuid4(),
        entry_type=EntryType.PURCHASE,
        from_account=from_account,
        to_account=to_account,
        amount=amount,
        credited_amount=30,
        platform_amount=10,
        request_id=key,
        reference="chapter-1",
        committed_at=at,
    )

def make_record(key: str) -> IdempotencyRecord:
    return IdempotencyRecord(key=key, fingerprint="f" * 64, result={"success": True}, created_at=NOW)

def transfer(store, key="purchase:1", at=NOW):
    buyer = store.get("buyer")
    creator = store.find("creator")
    writes = [
        BalanceWrite(account_id="buyer", expected_version=buyer.version, new_balance=buyer.balance - 40),
        BalanceWrite(
            account_id="creator",
            expected_version=creator.version if creator else 0,
            new_balance=(creator.balance if creator else 0) + 30,
        ),
    ]
    return store.commit(writes, make_entry(key, at=at), make_record(key))

def transfer_to_new_accounts(store):
    writes = [
        BalanceWrite(account_id="zed", expected_version=0, new_balance=5),
        BalanceWrite(account_id="amy", expected_version=0, new_balance=9),
    ]
    return store.commit(writes, make_entry("deposit:1", to_account="amy"), make_record("deposit:1"))

class TestCompareAndSet:
    """Tests for single-account compare-and-set."""

    def test_open_account(self, store):
        account = store.compare_and_set("buyer", 0, 100)

        assert account.balance == 100
        assert account.version == 1
        assert store.get("buyer") == account

    def test_update_bumps_version(self, store):
        store.compare_and_set("buyer", 0, 100)
        account = store.compare_and_set("buyer", 1, 70)

        assert account.version == 2
        assert store.get("buyer").balance == 70

    def test_stale_version_conflicts(self, store):
        store.compare_and_set("buyer", 0, 100)
        store.compare_and_set("buyer", 1, 70)

        with pytest.raises(VersionConflictError):
            store.compare_and_set("buyer", 1, 50)

        assert store.get("buyer").balance == 70

    def test_opening_existing_account_conflicts(self, store):
        store.compare_and_set("buyer", 0, 100)

        with pytest.raises(VersionConflictError):
            store.compare_and_set("buyer", 0, 5)

    def test_negative_balance_rejected(self, store):
        store.compare_and_set("buyer", 0, 10)

        with pytest.raises(ValidationError):
            store.compare_and_set("buyer", 1, -1)

        assert store.get("buyer").balance == 10

    def test_missing_account(self, store):
        assert store.find("nobody") is None
        with pytest.raises(AccountNotFoundError):
            store.get("nobody")

class TestCommit:
    """Tests for the atomic multi-account commit."""

    def test_commit_applies_everything(self, store):
        store.compare_and_set("buyer", 0, 100)

        updated = transfer(store)

        assert [a.balance for a in updated] == [60, 30]
        assert store.get("buyer").balance == 60
        assert store.get("creator").balance == 30
        assert store.count_entries("buyer") == 1
        assert store.get_record("purchase:1").result == {"success": True}

    def test_conflict_changes_nothing(self, store):
        """A stale write anywhere in the unit rolls back the whole commit."""
        store.compare_and_set("buyer", 0, 100)
        store.compare_and_set("creator", 0, 5)
        writes = [
            BalanceWrite(account_id="buyer", expected_version=1, new_balance=60),
            BalanceWrite(account_id="creator", expected_version=7, new_balance=35),
        ]

        with pytest.raises(VersionConflictError):
            store.commit(writes, make_entry("purchase:1"), make_record("purchase:1"))

        assert store.get("buyer").balance == 100
        assert store.get("creator").balance == 5
        assert store.count_entries("buyer") == 0
        assert store.get_record("purchase:1") is None

    def test_duplicate_key_changes_nothing(self, store):
        store.compare_and_set("buyer", 0, 100)
        transfer(store)

        with pytest.raises(DuplicateRequestError):
            transfer(store)

        assert store.get("buyer").balance == 60
        assert store.count_entries("buyer") == 1

    def test_overdraw_changes_nothing(self, store):
        store.compare_and_set("buyer", 0, 10)

        with pytest.raises(ValidationError):
            transfer(store)

        assert store.get("buyer").balance == 10
        assert store.find("creator") is None
        assert store.get_record("purchase:1") is None

    def test_results_follow_caller_order(self, store):
        updated = transfer_to_new_accounts(store)

        assert [a.id for a in updated] == ["zed", "amy"]
        assert [a.balance for a in updated] == [5, 9]

    def test_key_reused_on_other_account_changes_nothing(self, store):
        """Commits touching disjoint accounts still cannot share a key."""
        store.commit(
            [BalanceWrite(account_id="amy", expected_version=0, new_balance=500)],
            make_entry("deposit:topup-1", to_account="amy", from_account=None),
            make_record("deposit:topup-1"),
        )

        with pytest.raises(DuplicateRequestError):
            store.commit(
                [BalanceWrite(account_id="zed", expected_version=0, new_balance=70)],
                make_entry("deposit:topup-1", to_account="zed", from_account=None),
                make_record("deposit:topup-1"),
            )

        assert store.find("zed") is None
        assert store.count_entries("zed") == 0

class TestMemoryLocks:
    """Tests for the in-memory store's lock table."""

    def test_request_keys_do_not_allocate_locks(self):
        store = InMemoryAccountStore()
        store.compare_and_set("buyer", 0, 1000)
        for i in range(20):
            transfer(store, key=f"purchase:{i}")

        assert sorted(store._locks) == ["account:buyer", "account:creator"]

class FakeDriverError(Exception):
    """Stands in for a DBAPI error carrying a SQLSTATE."""

    def __init__(self, message: str, pgcode=None):
        super().__init__(message)
        self.pgcode = pgcode

class FailingSqlStore(SqlAccountStore):
    """Raises the given driver error on the first balance write of a commit."""

    def __init__(self, database_url: str, error: Exception):
        super().__init__(database_url)
        self.error = error

    def _apply(self, conn, write):
        raise OperationalError("UPDATE accounts", {}, self.error)

class TestSqlLockConflicts:
    """Tests for lock conflicts reported by the database."""

    def test_writes_lock_in_account_order(self, tmp_path):
        seen = []

        class RecordingStore(SqlAccountStore):
            def _apply(self, conn, write):
                seen.append(write.account_id)
                return super()._apply(conn, write)

        store = RecordingStore(f"sqlite:///{tmp_path / 'ledger.db'}")
        transfer_to_new_accounts(store)
        store.close()

        assert seen == ["amy", "zed"]

    @pytest.mark.parametrize("error", [
        FakeDriverError("deadlock detected", pgcode="40P01"),
        FakeDriverError("could not serialize access", pgcode="40001"),
        FakeDriverError("database is locked"),
    ])
    def test_transient_conflict_becomes_version_conflict(self, tmp_path, error):
        store = FailingSqlStore(f"sqlite:///{tmp_path / 'ledger.db'}", error)

        with pytest.raises(VersionConflictError):
            transfer_to_new_accounts(store)

        assert store.get_record("deposit:1") is None
        assert store.count_entries("amy") == 0
        store.close()

    def test_other_operational_errors_propagate(self, tmp_path):
        store = FailingSqlStore(f"sqlite:///{tmp_path / 'ledger.db'}", FakeDriverError("disk I/O error"))

        with pytest.raises(OperationalError):
            transfer_to_new_accounts(store)

        assert store.get_record("deposit:1") is None
        store.close()

    def test_is_transient_conflict(self):
        assert is_transient_conflict(OperationalError("x", {}, FakeDriverError("x", pgcode="40P01")))
        assert not is_transient_conflict(OperationalError("x", {}, FakeDriverError("x", pgcode="53300")))

class TestLedgerQueries:
    """Tests for ledger history queries."""

    def test_entries_newest_first_with_paging(self, store):
        store.compare_and_set("buyer", 0, 200)
        for i in range(4):
            transfer(store, key=f"purchase:{i}", at=NOW + timedelta(minutes=i))

        entries = store.list_entries("buyer", limit=2, offset=1)

        assert [e.request_id for e in entries] == ["purchase:2", "purchase:1"]
        assert entries[0].committed_at == NOW + timedelta(minutes=2)
        assert store.count_entries("buyer") == 4
        assert store.count_entries("creator") == 4
        assert store.count_entries("someone-else") == 0

class TestBuildStore:
    """Tests for backend selection."""

    def test_unconfigured(self):
        assert build_store(None) is None
        assert build_store("") is None

    def test_memory(self):
        assert isinstance(build_store("memory://"), InMemoryAccountStore)

    def test_sqlite(self, tmp_path):
        store = build_store(f"sqlite:///{tmp_path / 'ledger.db'}")
        assert isinstance(store, SqlAccountStore)
        store.close()

    def test_railway_postgres_url(self):
        assert parse_database_url("postgres://u:p@h:5432/db") == "postgresql://u:p@h:5432/db"
