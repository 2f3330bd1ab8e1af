from decimal import Decimal
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch
import sqlite3
import threading
import time

import pytest

from errors import (
    AlreadyDisputed,
    DuplicateTransactionId,
    LedgerIntegrityError,
    LedgerStorageError,
    NoOpenDispute,
    UnknownTransaction,
)
from models import Account, BalanceTransfer, ResolutionOutcome, TransferKind, TransferState
from repositories import (
    InMemoryLedgerRepository,
    SQLiteLedgerRepository,
    create_ledger_repository,
    get_ledger_repository,
    reset_repositories,
)
from config import TestingSettings


def deposit(client, tx, amount="10"):
    return BalanceTransfer(client=client, tx=tx, kind=TransferKind.deposit, amount=Decimal(amount))


@pytest.fixture
def funded(ledger):
    """Ledger with client 1 owning deposit 1 and withdrawal 2."""
    ledger.upsert_account(Account(client=1, available=Decimal("7"), total=Decimal("7")))
    ledger.insert_balance_transfer(deposit(1, 1))
    ledger.insert_balance_transfer(
        BalanceTransfer(client=1, tx=2, kind=TransferKind.withdrawal, amount=Decimal("3"))
    )
    return ledger


class TestAccounts:
    def test_missing_account(self, ledger):
        assert ledger.get_account(1) is None

    def test_upsert_replaces_whole_account(self, ledger):
        ledger.upsert_account(Account(client=1, available=Decimal("1.5"), total=Decimal("1.5")))
        ledger.upsert_account(Account(client=1, held=Decimal("2"), total=Decimal("2"), locked=True))

        account = ledger.get_account(1)
        assert account.available == Decimal("0")
        assert account.held == Decimal("2")
        assert account.locked is True
        assert ledger.get_accounts_count() == 1

    def test_decimal_amounts_round_trip_exactly(self, ledger):
        ledger.upsert_account(Account(client=1, available=Decimal("0.1234"), total=Decimal("0.1234")))

        assert ledger.get_account(1).available == Decimal("0.1234")

    def test_list_accounts_ascending(self, ledger):
        for client in (5, 1, 3):
            ledger.upsert_account(Account(client=client))

        assert [a.client for a in ledger.list_accounts()] == [1, 3, 5]


class TestBalanceTransfers:
    def test_find_with_state(self, funded):
        transfer = funded.find_balance_transfer(1, 2)

        assert transfer.kind == TransferKind.withdrawal
        assert transfer.amount == Decimal("3")
        assert transfer.state == TransferState.active

    def test_find_requires_matching_client(self, funded):
        funded.upsert_account(Account(client=2))

        assert funded.find_balance_transfer(2, 1) is None

    def test_transaction_id_is_globally_unique(self, funded):
        funded.upsert_account(Account(client=2))

        with pytest.raises(DuplicateTransactionId):
            funded.insert_balance_transfer(deposit(2, 1))
        with pytest.raises(DuplicateTransactionId):
            funded.insert_balance_transfer(deposit(1, 2))
        assert funded.get_transfers_count() == 2

    def test_transfer_requires_account(self, ledger):
        with pytest.raises(LedgerIntegrityError):
            ledger.insert_balance_transfer(deposit(9, 1))

    def test_list_in_insertion_order(self, funded):
        funded.insert_balance_transfer(deposit(1, 0))

        assert [t.tx for t in funded.list_balance_transfers(1)] == [1, 2, 0]
        assert funded.list_balance_transfers(2) == []


class TestDisputesAndResolutions:
    def test_dispute_lifecycle(self, funded):
        funded.insert_dispute(1, 1)
        assert funded.find_balance_transfer(1, 1).state == TransferState.disputed

        funded.insert_resolution(1, 1, ResolutionOutcome.resolve)
        assert funded.find_balance_transfer(1, 1).state == TransferState.resolved

        funded.insert_dispute(1, 2)
        funded.insert_resolution(1, 2, ResolutionOutcome.chargeback)
        assert funded.find_balance_transfer(1, 2).state == TransferState.charged_back

    def test_dispute_at_most_once(self, funded):
        funded.insert_dispute(1, 1)

        with pytest.raises(AlreadyDisputed):
            funded.insert_dispute(1, 1)

    def test_dispute_requires_transfer(self, funded):
        with pytest.raises(UnknownTransaction):
            funded.insert_dispute(1, 99)
        with pytest.raises(UnknownTransaction):
            funded.insert_dispute(2, 1)

    def test_resolution_requires_dispute(self, funded):
        with pytest.raises(NoOpenDispute):
            funded.insert_resolution(1, 1, ResolutionOutcome.resolve)

    def test_resolution_at_most_once(self, funded):
        funded.insert_dispute(1, 1)
        funded.insert_resolution(1, 1, ResolutionOutcome.chargeback)

        with pytest.raises(NoOpenDispute):
            funded.insert_resolution(1, 1, ResolutionOutcome.resolve)
        assert funded.find_balance_transfer(1, 1).state == TransferState.charged_back


class TestAtomic:
    def test_commit_on_success(self, ledger):
        with ledger.atomic():
            ledger.upsert_account(Account(client=1, available=Decimal("5"), total=Decimal("5")))
            ledger.insert_balance_transfer(deposit(1, 1, "5"))

        assert ledger.get_account(1).available == Decimal("5")
        assert ledger.get_transfers_count() == 1

    def test_rollback_discards_every_write(self, funded):
        with pytest.raises(AlreadyDisputed):
            with funded.atomic():
                funded.upsert_account(Account(client=1, held=Decimal("10"), total=Decimal("10")))
                funded.upsert_account(Account(client=2))
                funded.insert_balance_transfer(deposit(2, 3))
                funded.insert_dispute(1, 1)
                funded.insert_resolution(1, 1, ResolutionOutcome.resolve)
                funded.insert_dispute(1, 2)
                funded.insert_dispute(1, 2)

        assert funded.get_account(1).available == Decimal("7")
        assert funded.get_account(2) is None
        assert funded.find_balance_transfer(2, 3) is None
        assert funded.find_balance_transfer(1, 1).state == TransferState.active
        assert funded.find_balance_transfer(1, 2).state == TransferState.active
        # the tx id freed by the rollback can be used again
        funded.upsert_account(Account(client=2))
        funded.insert_balance_transfer(deposit(2, 3))

    def test_rollback_on_unexpected_error(self, ledger):
        with pytest.raises(RuntimeError):
            with ledger.atomic():
                ledger.upsert_account(Account(client=1))
                raise RuntimeError("boom")

        assert ledger.get_account(1) is None

    def test_interrupt_rolls_back_and_releases_scope(self, ledger):
        with pytest.raises(KeyboardInterrupt):
            with ledger.atomic():
                ledger.upsert_account(Account(client=1))
                raise KeyboardInterrupt

        assert ledger.get_account(1) is None

        with pytest.raises(RuntimeError):
            with ledger.atomic():
                ledger.upsert_account(Account(client=2))
                raise RuntimeError("boom")

        # a fresh scope, not one joined to the interrupted transaction
        assert ledger.get_account(2) is None

    def test_nested_scope_joins_outer(self, ledger):
        with pytest.raises(RuntimeError):
            with ledger.atomic():
                with ledger.atomic():
                    ledger.upsert_account(Account(client=1))
                raise RuntimeError("boom")

        assert ledger.get_account(1) is None


class TestSQLiteStore:
    def test_schema_enforces_foreign_keys(self, tmp_path):
        db_path = tmp_path / "ledger.db"
        SQLiteLedgerRepository(db_path).close()

        connection = sqlite3.connect(str(db_path))
        connection.execute("PRAGMA foreign_keys = ON")
        with pytest.raises(sqlite3.IntegrityError):
            connection.execute("INSERT INTO disputes (customer_id, tx_id) VALUES (1, 1)")
        with pytest.raises(sqlite3.IntegrityError):
            connection.execute("INSERT INTO resolutions (customer_id, tx_id, outcome) VALUES (1, 1, 'resolve')")
        connection.close()

    def test_file_database_persists_between_opens(self, tmp_path):
        db_path = tmp_path / "ledger.db"
        repo = SQLiteLedgerRepository(db_path)
        repo.upsert_account(Account(client=1, available=Decimal("2"), total=Decimal("2")))
        repo.close()

        reopened = SQLiteLedgerRepository(db_path)
        assert reopened.get_account(1).available == Decimal("2")
        reopened.close()

    def test_writes_after_interrupt_are_committed(self, tmp_path):
        db_path = tmp_path / "ledger.db"
        repo = SQLiteLedgerRepository(db_path)
        with pytest.raises(KeyboardInterrupt):
            with repo.atomic():
                raise KeyboardInterrupt

        with repo.atomic():
            repo.upsert_account(Account(client=1, available=Decimal("3"), total=Decimal("3")))
        repo.close()

        reopened = SQLiteLedgerRepository(db_path)
        assert reopened.get_account(1).available == Decimal("3")
        reopened.close()

    def test_reset_drops_existing_ledger(self, tmp_path):
        db_path = tmp_path / "ledger.db"
        repo = SQLiteLedgerRepository(db_path)
        repo.upsert_account(Account(client=1))
        repo.insert_balance_transfer(deposit(1, 1))
        repo.close()

        fresh = SQLiteLedgerRepository(db_path, reset=True)
        assert fresh.get_accounts_count() == 0
        assert fresh.get_transfers_count() == 0
        fresh.close()

    def test_closed_store_raises_storage_error(self):
        repo = SQLiteLedgerRepository()
        repo.close()

        with pytest.raises(LedgerStorageError):
            repo.get_account(1)

    def test_unopenable_path_raises_storage_error(self, tmp_path):
        with pytest.raises(LedgerStorageError):
            SQLiteLedgerRepository(tmp_path / "missing" / "ledger.db")


class TestRepositoryFactory:
    def test_memory_backend(self):
        settings = TestingSettings(storage_backend="memory")

        assert isinstance(create_ledger_repository(settings), InMemoryLedgerRepository)

    def test_sqlite_backend(self):
        repo = create_ledger_repository(TestingSettings(storage_backend="sqlite"))

        assert isinstance(repo, SQLiteLedgerRepository)
        assert repo.db_path == ":memory:"
        repo.close()


class TestSharedRepository:
    def setup_method(self):
        reset_repositories()

    def teardown_method(self):
        reset_repositories()

    def test_concurrent_first_access_opens_one_repository(self):
        created = []

        def slow_create():
            time.sleep(0.05)
            repo = InMemoryLedgerRepository()
            created.append(repo)
            return repo

        with patch("repositories.create_ledger_repository", side_effect=slow_create):
            with ThreadPoolExecutor(max_workers=4) as pool:
                repos = list(pool.map(lambda _: get_ledger_repository(), range(4)))

        assert len(created) == 1
        assert all(repo is created[0] for repo in repos)

    def test_memory_counts_wait_for_open_scope(self):
        ledger = InMemoryLedgerRepository()
        counts = []
        reader = threading.Thread(target=lambda: counts.append(ledger.get_accounts_count()))

        with ledger.atomic():
            ledger.upsert_account(Account(client=1))
            reader.start()
            reader.join(timeout=0.1)
            assert counts == []
            ledger.upsert_account(Account(client=2))

        reader.join()
        assert counts == [2]
