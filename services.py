from typing import List, Optional
from pydantic import ValidationError
import structlog

from errors import (
    AccountLocked,
    InsufficientFunds,
    LedgerIntegrityError,
    MalformedRecord,
    TransactionRejected,
    UnknownTransaction,
)
from models import (
    Account,
    AccountSnapshot,
    BalanceTransfer,
    EventType,
    Outcome,
    RawRecord,
    ResolutionOutcome,
    TransactionEvent,
    TransferKind,
    contract_violation,
)
from repositories import LedgerRepository
import projection

logger = structlog.get_logger()


def parse_event(record: RawRecord) -> TransactionEvent:
    """Build a typed event from a raw record, raising MalformedRecord if it does not fit."""
    try:
        return TransactionEvent(**record)
    except (ValidationError, TypeError) as e:
        raise MalformedRecord(f"Malformed record: {e}") from e


class TransactionProcessor:
    """Applies customer events to the ledger, one at a time and in order.

    Each event is validated and written inside a single store transaction;
    a rejected event leaves no trace.
    """

    def __init__(self, ledger: LedgerRepository, diagnostics: bool = False):
        self.ledger = ledger
        self.diagnostics = diagnostics
        self.accepted_count = 0
        self.rejected_count = 0

    def process_record(self, record: RawRecord) -> Outcome:
        """Parse and apply a raw record."""
        try:
            event = parse_event(record)
        except MalformedRecord as exc:
            return self.reject(exc)
        return self.apply(event)

    def apply(self, event: TransactionEvent) -> Outcome:
        try:
            problem = contract_violation(event.type, event.amount)
            if problem:
                raise MalformedRecord(problem, event.client, event.tx)
            with self.ledger.atomic():
                account = self._dispatch(event)
        except TransactionRejected as exc:
            return self._rejected(exc, event.type, event.client, event.tx)

        self.accepted_count += 1
        logger.debug(
            "Event applied",
            type=event.type.value,
            client=event.client,
            tx=event.tx,
            available=str(account.available),
            held=str(account.held),
            total=str(account.total),
            locked=account.locked
        )
        return Outcome(
            accepted=True,
            type=event.type,
            client=event.client,
            tx=event.tx,
            account=account.snapshot()
        )

    def reject(self, exc: TransactionRejected) -> Outcome:
        """Record an event that an event source refused before it could be typed."""
        return self._rejected(exc, event_type=None, client=exc.client, tx=exc.tx)

    def _dispatch(self, event: TransactionEvent) -> Account:
        if event.type == EventType.deposit:
            return self._deposit(event)
        if event.type == EventType.withdrawal:
            return self._withdraw(event)
        if event.type == EventType.dispute:
            return self._dispute(event)
        if event.type == EventType.resolve:
            return self._close_dispute(event, ResolutionOutcome.resolve)
        return self._close_dispute(event, ResolutionOutcome.chargeback)

    def _deposit(self, event: TransactionEvent) -> Account:
        account = self.ledger.get_account(event.client) or Account(client=event.client)
        self._ensure_unlocked(account, event)

        projection.credit(account, event.amount)
        self.ledger.upsert_account(account)
        self.ledger.insert_balance_transfer(BalanceTransfer(
            client=event.client,
            tx=event.tx,
            kind=TransferKind.deposit,
            amount=event.amount
        ))
        return account

    def _withdraw(self, event: TransactionEvent) -> Account:
        account = self.ledger.get_account(event.client) or Account(client=event.client)
        self._ensure_unlocked(account, event)

        if account.available < event.amount:
            raise InsufficientFunds(
                f"Available {account.available} is less than {event.amount}",
                event.client,
                event.tx
            )

        projection.debit(account, event.amount)
        self.ledger.upsert_account(account)
        self.ledger.insert_balance_transfer(BalanceTransfer(
            client=event.client,
            tx=event.tx,
            kind=TransferKind.withdrawal,
            amount=event.amount
        ))
        return account

    def _dispute(self, event: TransactionEvent) -> Account:
        account = self.ledger.get_account(event.client)
        if account is None:
            raise UnknownTransaction(
                f"Client {event.client} has no transactions", event.client, event.tx
            )
        self._ensure_unlocked(account, event)

        transfer = self._find_transfer(event)
        self.ledger.insert_dispute(event.client, event.tx)

        projection.hold(account, transfer)
        self.ledger.upsert_account(account)
        return account

    def _close_dispute(self, event: TransactionEvent, outcome: ResolutionOutcome) -> Account:
        # Allowed on locked accounts so an open dispute can still finish.
        transfer = self._find_transfer(event)
        self.ledger.insert_resolution(event.client, event.tx, outcome)

        account = self.ledger.get_account(event.client)
        if account is None:
            raise LedgerIntegrityError(
                f"Transfer {event.tx} exists but client {event.client} has no account"
            )

        if outcome == ResolutionOutcome.resolve:
            projection.release(account, transfer)
        else:
            projection.charge_back(account, transfer)
        self.ledger.upsert_account(account)
        return account

    def _find_transfer(self, event: TransactionEvent) -> BalanceTransfer:
        transfer = self.ledger.find_balance_transfer(event.client, event.tx)
        if transfer is None:
            raise UnknownTransaction(
                f"Transaction {event.tx} not found for client {event.client}",
                event.client,
                event.tx
            )
        return transfer

    @staticmethod
    def _ensure_unlocked(account: Account, event: TransactionEvent) -> None:
        if account.locked:
            raise AccountLocked(f"Account {account.client} is locked", event.client, event.tx)

    def _rejected(
        self,
        exc: TransactionRejected,
        event_type: Optional[EventType],
        client: Optional[int],
        tx: Optional[int]
    ) -> Outcome:
        self.rejected_count += 1
        if self.diagnostics:
            logger.warning(
                "Event rejected",
                reason=exc.code,
                detail=exc.detail,
                type=event_type.value if event_type else None,
                client=client,
                tx=tx
            )
        return Outcome(
            accepted=False,
            type=event_type,
            client=client,
            tx=tx,
            reason=exc.reason,
            detail=exc.detail
        )

    def snapshots(self) -> List[AccountSnapshot]:
        """Every account, ascending by customer id."""
        return [account.snapshot() for account in self.ledger.list_accounts()]

    def get_snapshot(self, client_id: int) -> Optional[AccountSnapshot]:
        account = self.ledger.get_account(client_id)
        return account.snapshot() if account else None

    def reconcile(self) -> List[int]:
        """Rebuild every account from its ledger rows and return the customers that disagree."""
        mismatched = []
        for account in self.ledger.list_accounts():
            rebuilt = projection.rebuild(account.client, self.ledger.list_balance_transfers(account.client))
            if rebuilt.dict() != account.dict() or not projection.is_balanced(account):
                logger.error(
                    "Account projection mismatch",
                    client=account.client,
                    stored_available=str(account.available),
                    stored_held=str(account.held),
                    stored_total=str(account.total),
                    rebuilt_available=str(rebuilt.available),
                    rebuilt_held=str(rebuilt.held),
                    rebuilt_total=str(rebuilt.total)
                )
                mismatched.append(account.client)
        return mismatched


def get_transaction_processor(ledger: LedgerRepository, diagnostics: bool = False) -> TransactionProcessor:
    return TransactionProcessor(ledger, diagnostics=diagnostics)
