from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import contextmanager
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Union
import sqlite3
import threading

from config import Settings, get_settings
from errors import (
    AlreadyDisputed,
    DuplicateTransactionId,
    LedgerIntegrityError,
    LedgerStorageError,
    NoOpenDispute,
    UnknownTransaction,
)
from models import (
    Account,
    BalanceTransfer,
    ResolutionOutcome,
    TransferKind,
    TransferState,
)
from storage import MEMORY_DATABASE, connect, create_schema

TransferKey = Tuple[int, int]


class LedgerRepository(ABC):
    """Constraint-enforcing storage for accounts, transfers, disputes and resolutions.

    The insert methods are the only way to record history and they reject
    anything that already happened or references something that never did.
    Callers rely on those rejections instead of re-checking.
    """

    @abstractmethod
    def atomic(self):
        """Context manager: commit every write on success, discard all of them on any exception."""
        pass

    @abstractmethod
    def get_account(self, client_id: int) -> Optional[Account]:
        """Get an account. Returns None if the customer has none yet."""
        pass

    @abstractmethod
    def upsert_account(self, account: Account) -> None:
        """Create or fully replace an account."""
        pass

    @abstractmethod
    def list_accounts(self) -> List[Account]:
        """All accounts, ascending by customer id."""
        pass

    @abstractmethod
    def insert_balance_transfer(self, transfer: BalanceTransfer) -> None:
        """Record a deposit or withdrawal. Raises DuplicateTransactionId if the tx id is taken."""
        pass

    @abstractmethod
    def find_balance_transfer(self, client_id: int, tx_id: int) -> Optional[BalanceTransfer]:
        """Find a customer's transfer together with its dispute state."""
        pass

    @abstractmethod
    def list_balance_transfers(self, client_id: int) -> List[BalanceTransfer]:
        """A customer's transfers in the order they were recorded."""
        pass

    @abstractmethod
    def insert_dispute(self, client_id: int, tx_id: int) -> None:
        """Open a dispute. Raises AlreadyDisputed or UnknownTransaction."""
        pass

    @abstractmethod
    def insert_resolution(self, client_id: int, tx_id: int, outcome: ResolutionOutcome) -> None:
        """Close an open dispute. Raises NoOpenDispute."""
        pass

    @abstractmethod
    def get_accounts_count(self) -> int:
        pass

    @abstractmethod
    def get_transfers_count(self) -> int:
        pass

    @abstractmethod
    def close(self) -> None:
        pass


def _is_unique_violation(error: sqlite3.IntegrityError) -> bool:
    return "UNIQUE constraint failed" in str(error)


def _is_foreign_key_violation(error: sqlite3.IntegrityError) -> bool:
    return "FOREIGN KEY constraint failed" in str(error)


class SQLiteLedgerRepository(LedgerRepository):
    def __init__(self, db_path: Union[str, Path] = MEMORY_DATABASE, reset: bool = False):
        self.db_path = str(db_path)
        self._lock = threading.RLock()
        self._in_transaction = False
        try:
            self._connection = connect(self.db_path)
            create_schema(self._connection, reset=reset)
        except sqlite3.Error as e:
            raise LedgerStorageError(f"Failed to open ledger database {self.db_path}: {e}") from e

    def _execute(self, sql: str, params: Tuple = ()) -> sqlite3.Cursor:
        if self._connection is None:
            raise LedgerStorageError("Ledger database is closed")
        try:
            return self._connection.execute(sql, params)
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as e:
            raise LedgerStorageError(f"Ledger query failed: {e}") from e

    @contextmanager
    def atomic(self):
        with self._lock:
            if self._in_transaction:
                yield
                return
            self._execute("BEGIN IMMEDIATE")
            self._in_transaction = True
            try:
                yield
            except BaseException:
                self._in_transaction = False
                self._execute("ROLLBACK")
                raise
            self._in_transaction = False
            self._execute("COMMIT")

    def get_account(self, client_id: int) -> Optional[Account]:
        with self._lock:
            row = self._execute(
                "SELECT customer_id, available, held, total, locked FROM accounts WHERE customer_id = ?",
                (client_id,)
            ).fetchone()
            return self._account_from_row(row) if row else None

    def upsert_account(self, account: Account) -> None:
        with self._lock:
            self._execute(
                """
                INSERT INTO accounts (customer_id, available, held, total, locked)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (customer_id) DO UPDATE SET
                    available = excluded.available,
                    held = excluded.held,
                    total = excluded.total,
                    locked = excluded.locked
                """,
                (
                    account.client,
                    str(account.available),
                    str(account.held),
                    str(account.total),
                    int(account.locked),
                )
            )

    def list_accounts(self) -> List[Account]:
        with self._lock:
            rows = self._execute(
                "SELECT customer_id, available, held, total, locked FROM accounts ORDER BY customer_id"
            ).fetchall()
            return [self._account_from_row(row) for row in rows]

    def insert_balance_transfer(self, transfer: BalanceTransfer) -> None:
        with self._lock:
            try:
                self._execute(
                    "INSERT INTO balance_transfers (customer_id, tx_id, kind, amount) VALUES (?, ?, ?, ?)",
                    (transfer.client, transfer.tx, transfer.kind.value, str(transfer.amount))
                )
            except sqlite3.IntegrityError as e:
                if _is_unique_violation(e):
                    raise DuplicateTransactionId(
                        f"Transaction {transfer.tx} already exists", transfer.client, transfer.tx
                    ) from e
                raise LedgerIntegrityError(
                    f"Transfer {transfer.tx} rejected for client {transfer.client}: {e}"
                ) from e

    def find_balance_transfer(self, client_id: int, tx_id: int) -> Optional[BalanceTransfer]:
        with self._lock:
            row = self._execute(
                self._TRANSFER_QUERY + " WHERE t.customer_id = ? AND t.tx_id = ?",
                (client_id, tx_id)
            ).fetchone()
            return self._transfer_from_row(row) if row else None

    def list_balance_transfers(self, client_id: int) -> List[BalanceTransfer]:
        with self._lock:
            rows = self._execute(
                self._TRANSFER_QUERY + " WHERE t.customer_id = ? ORDER BY t.rowid",
                (client_id,)
            ).fetchall()
            return [self._transfer_from_row(row) for row in rows]

    def insert_dispute(self, client_id: int, tx_id: int) -> None:
        with self._lock:
            try:
                self._execute(
                    "INSERT INTO disputes (customer_id, tx_id) VALUES (?, ?)",
                    (client_id, tx_id)
                )
            except sqlite3.IntegrityError as e:
                if _is_unique_violation(e):
                    raise AlreadyDisputed(
                        f"Transaction {tx_id} is already disputed", client_id, tx_id
                    ) from e
                if _is_foreign_key_violation(e):
                    raise UnknownTransaction(
                        f"Transaction {tx_id} not found for client {client_id}", client_id, tx_id
                    ) from e
                raise LedgerIntegrityError(f"Dispute on {tx_id} rejected: {e}") from e

    def insert_resolution(self, client_id: int, tx_id: int, outcome: ResolutionOutcome) -> None:
        with self._lock:
            try:
                self._execute(
                    "INSERT INTO resolutions (customer_id, tx_id, outcome) VALUES (?, ?, ?)",
                    (client_id, tx_id, outcome.value)
                )
            except sqlite3.IntegrityError as e:
                if _is_unique_violation(e) or _is_foreign_key_violation(e):
                    raise NoOpenDispute(
                        f"Transaction {tx_id} has no open dispute", client_id, tx_id
                    ) from e
                raise LedgerIntegrityError(f"Resolution of {tx_id} rejected: {e}") from e

    def get_accounts_count(self) -> int:
        with self._lock:
            return self._execute("SELECT COUNT(*) FROM accounts").fetchone()[0]

    def get_transfers_count(self) -> int:
        with self._lock:
            return self._execute("SELECT COUNT(*) FROM balance_transfers").fetchone()[0]

    def close(self) -> None:
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None

    _TRANSFER_QUERY = """
        SELECT t.customer_id, t.tx_id, t.kind, t.amount,
               d.tx_id IS NOT NULL AS disputed, r.outcome
        FROM balance_transfers t
        LEFT JOIN disputes d ON d.customer_id = t.customer_id AND d.tx_id = t.tx_id
        LEFT JOIN resolutions r ON r.customer_id = t.customer_id AND r.tx_id = t.tx_id
    """

    @staticmethod
    def _account_from_row(row: sqlite3.Row) -> Account:
        return Account(
            client=row["customer_id"],
            available=Decimal(row["available"]),
            held=Decimal(row["held"]),
            total=Decimal(row["total"]),
            locked=bool(row["locked"])
        )

    @staticmethod
    def _transfer_from_row(row: sqlite3.Row) -> BalanceTransfer:
        outcome = ResolutionOutcome(row["outcome"]) if row["outcome"] else None
        return BalanceTransfer(
            client=row["customer_id"],
            tx=row["tx_id"],
            kind=TransferKind(row["kind"]),
            amount=Decimal(row["amount"]),
            state=TransferState.derive(bool(row["disputed"]), outcome)
        )


class InMemoryLedgerRepository(LedgerRepository):
    """Keyed-map ledger with the same constraints as the SQLite schema."""

    def __init__(self):
        self._accounts: Dict[int, Dict[str, Any]] = {}
        self._transfers: Dict[TransferKey, Dict[str, Any]] = {}
        # global tx id -> owning customer
        self._transfer_ids: Dict[int, int] = {}
        self._customer_transfers: Dict[int, List[int]] = defaultdict(list)
        self._disputes: Set[TransferKey] = set()
        self._resolutions: Dict[TransferKey, ResolutionOutcome] = {}
        self._undo: Optional[List[Callable[[], None]]] = None
        self._lock = threading.RLock()

    def _record_undo(self, action: Callable[[], None]) -> None:
        if self._undo is not None:
            self._undo.append(action)

    @contextmanager
    def atomic(self):
        with self._lock:
            if self._undo is not None:
                yield
                return
            self._undo = []
            try:
                yield
            except BaseException:
                undo, self._undo = self._undo, None
                for action in reversed(undo):
                    action()
                raise
            self._undo = None

    def get_account(self, client_id: int) -> Optional[Account]:
        with self._lock:
            data = self._accounts.get(client_id)
            return Account(**data) if data is not None else None

    def upsert_account(self, account: Account) -> None:
        with self._lock:
            previous = self._accounts.get(account.client)
            if previous is None:
                self._record_undo(lambda: self._accounts.pop(account.client, None))
            else:
                self._record_undo(lambda: self._accounts.__setitem__(account.client, previous))
            self._accounts[account.client] = account.dict()

    def list_accounts(self) -> List[Account]:
        with self._lock:
            return [Account(**self._accounts[client_id]) for client_id in sorted(self._accounts)]

    def insert_balance_transfer(self, transfer: BalanceTransfer) -> None:
        with self._lock:
            if transfer.tx in self._transfer_ids:
                raise DuplicateTransactionId(
                    f"Transaction {transfer.tx} already exists", transfer.client, transfer.tx
                )
            if transfer.client not in self._accounts:
                raise LedgerIntegrityError(
                    f"Transfer {transfer.tx} rejected: client {transfer.client} has no account"
                )
            key = (transfer.client, transfer.tx)
            self._transfers[key] = {
                "client": transfer.client,
                "tx": transfer.tx,
                "kind": transfer.kind,
                "amount": transfer.amount,
            }
            self._transfer_ids[transfer.tx] = transfer.client
            self._customer_transfers[transfer.client].append(transfer.tx)
            self._record_undo(lambda: self._remove_transfer(key))

    def _remove_transfer(self, key: TransferKey) -> None:
        client_id, tx_id = key
        self._transfers.pop(key, None)
        self._transfer_ids.pop(tx_id, None)
        self._customer_transfers[client_id].remove(tx_id)

    def _transfer_with_state(self, key: TransferKey) -> BalanceTransfer:
        state = TransferState.derive(key in self._disputes, self._resolutions.get(key))
        return BalanceTransfer(state=state, **self._transfers[key])

    def find_balance_transfer(self, client_id: int, tx_id: int) -> Optional[BalanceTransfer]:
        with self._lock:
            key = (client_id, tx_id)
            if key not in self._transfers:
                return None
            return self._transfer_with_state(key)

    def list_balance_transfers(self, client_id: int) -> List[BalanceTransfer]:
        with self._lock:
            return [
                self._transfer_with_state((client_id, tx_id))
                for tx_id in self._customer_transfers.get(client_id, [])
            ]

    def insert_dispute(self, client_id: int, tx_id: int) -> None:
        with self._lock:
            key = (client_id, tx_id)
            if key in self._disputes:
                raise AlreadyDisputed(f"Transaction {tx_id} is already disputed", client_id, tx_id)
            if key not in self._transfers:
                raise UnknownTransaction(
                    f"Transaction {tx_id} not found for client {client_id}", client_id, tx_id
                )
            self._disputes.add(key)
            self._record_undo(lambda: self._disputes.discard(key))

    def insert_resolution(self, client_id: int, tx_id: int, outcome: ResolutionOutcome) -> None:
        with self._lock:
            key = (client_id, tx_id)
            if key not in self._disputes or key in self._resolutions:
                raise NoOpenDispute(f"Transaction {tx_id} has no open dispute", client_id, tx_id)
            self._resolutions[key] = outcome
            self._record_undo(lambda: self._resolutions.pop(key, None))

    def get_accounts_count(self) -> int:
        with self._lock:
            return len(self._accounts)

    def get_transfers_count(self) -> int:
        with self._lock:
            return len(self._transfers)

    def close(self) -> None:
        pass


def create_ledger_repository(settings: Optional[Settings] = None) -> LedgerRepository:
    settings = settings or get_settings()
    if settings.storage_backend == "memory":
        return InMemoryLedgerRepository()
    return SQLiteLedgerRepository(settings.database_path, reset=settings.reset_database)


_ledger_repo: Optional[LedgerRepository] = None
_ledger_repo_lock = threading.Lock()


def get_ledger_repository() -> LedgerRepository:
    global _ledger_repo
    with _ledger_repo_lock:
        if _ledger_repo is None:
            _ledger_repo = create_ledger_repository()
        return _ledger_repo


def reset_repositories() -> None:
    """Close the shared repository; the next access opens a fresh one."""
    global _ledger_repo
    with _ledger_repo_lock:
        if _ledger_repo is not None:
            _ledger_repo.close()
        _ledger_repo = None
