from typing import Optional

from models import RejectionReason


class LedgerError(Exception):
    """Base class for everything the ledger core raises."""


class TransactionRejected(LedgerError):
    """An event that breaks a ledger rule. Dropped without side effects."""

    reason: RejectionReason

    def __init__(self, detail: str, client: Optional[int] = None, tx: Optional[int] = None):
        super().__init__(detail)
        self.detail = detail
        self.client = client
        self.tx = tx

    @property
    def code(self) -> str:
        return self.reason.value


class MalformedRecord(TransactionRejected):
    reason = RejectionReason.malformed_record


class AccountLocked(TransactionRejected):
    reason = RejectionReason.account_locked


class InsufficientFunds(TransactionRejected):
    reason = RejectionReason.insufficient_funds


class UnknownTransaction(TransactionRejected):
    reason = RejectionReason.unknown_transaction


class AlreadyDisputed(TransactionRejected):
    reason = RejectionReason.already_disputed


class NoOpenDispute(TransactionRejected):
    reason = RejectionReason.no_open_dispute


class DuplicateTransactionId(TransactionRejected):
    reason = RejectionReason.duplicate_transaction_id


class LedgerStorageError(LedgerError):
    """The store failed. The projection can no longer be trusted, so the run aborts."""


class LedgerIntegrityError(LedgerStorageError):
    """A stored row contradicts the account projection."""
