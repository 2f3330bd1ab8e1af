from pydantic import BaseModel, Field, validator
from enum import Enum
from typing import Any, Dict, List, Optional
from datetime import datetime
from decimal import Decimal


MAX_CLIENT_ID = 2**16 - 1
MAX_TRANSACTION_ID = 2**32 - 1
# Ledger sums stay exact within the default 28-digit Decimal context.
AMOUNT_MAX_DIGITS = 20
AMOUNT_DECIMAL_PLACES = 4


class EventType(str, Enum):
    deposit = "deposit"
    withdrawal = "withdrawal"
    dispute = "dispute"
    resolve = "resolve"
    chargeback = "chargeback"


BALANCE_TRANSFER_EVENTS = (EventType.deposit, EventType.withdrawal)


class TransferKind(str, Enum):
    deposit = "deposit"
    withdrawal = "withdrawal"


class ResolutionOutcome(str, Enum):
    resolve = "resolve"
    chargeback = "chargeback"


class TransferState(str, Enum):
    active = "active"
    disputed = "disputed"
    resolved = "resolved"
    charged_back = "charged_back"

    @classmethod
    def derive(cls, disputed: bool, outcome: Optional[ResolutionOutcome]) -> "TransferState":
        """Derive the state from the presence of dispute and resolution rows."""
        if outcome == ResolutionOutcome.chargeback:
            return cls.charged_back
        if outcome == ResolutionOutcome.resolve:
            return cls.resolved
        if disputed:
            return cls.disputed
        return cls.active


class RejectionReason(str, Enum):
    malformed_record = "malformed_record"
    account_locked = "account_locked"
    insufficient_funds = "insufficient_funds"
    unknown_transaction = "unknown_transaction"
    already_disputed = "already_disputed"
    no_open_dispute = "no_open_dispute"
    duplicate_transaction_id = "duplicate_transaction_id"


def contract_violation(event_type: EventType, amount: Optional[Decimal]) -> Optional[str]:
    """Return why a record breaks the amount contract, or None if it is well formed."""
    if event_type in BALANCE_TRANSFER_EVENTS:
        if amount is None:
            return f"{event_type.value} requires an amount"
        if not amount.is_finite() or amount <= 0:
            return f"{event_type.value} amount must be positive"
        return None
    if amount is not None:
        return f"{event_type.value} must not carry an amount"
    return None


class TransactionEvent(BaseModel):
    type: EventType = Field(..., description="Event type")
    client: int = Field(
        ...,
        ge=0,
        le=MAX_CLIENT_ID,
        description="Customer identifier"
    )
    tx: int = Field(
        ...,
        ge=0,
        le=MAX_TRANSACTION_ID,
        description="Transaction identifier, globally unique for deposits and withdrawals"
    )
    amount: Optional[Decimal] = Field(
        None,
        max_digits=AMOUNT_MAX_DIGITS,
        decimal_places=AMOUNT_DECIMAL_PLACES,
        description="Amount for deposits and withdrawals, absent otherwise"
    )

    @validator('amount', always=True)
    def validate_amount_for_type(cls, v, values):
        event_type = values.get('type')
        if event_type is None:
            return v
        problem = contract_violation(event_type, v)
        if problem:
            raise ValueError(problem)
        return v


class BalanceTransfer(BaseModel):
    client: int
    tx: int
    kind: TransferKind
    amount: Decimal
    state: TransferState = TransferState.active


class AccountSnapshot(BaseModel):
    client: int = Field(..., description="Customer identifier")
    available: Decimal = Field(..., description="Funds available for withdrawal")
    held: Decimal = Field(..., description="Funds held by open disputes")
    total: Decimal = Field(..., description="available + held")
    locked: bool = Field(..., description="Frozen after a chargeback")

    class Config:
        json_encoders = {
            Decimal: lambda v: float(v)
        }


class Account(BaseModel):
    client: int
    available: Decimal = Decimal("0")
    held: Decimal = Decimal("0")
    total: Decimal = Decimal("0")
    locked: bool = False

    def snapshot(self) -> AccountSnapshot:
        return AccountSnapshot(
            client=self.client,
            available=self.available,
            held=self.held,
            total=self.total,
            locked=self.locked
        )


class Outcome(BaseModel):
    accepted: bool = Field(..., description="Whether the event changed the ledger")
    type: Optional[EventType] = None
    client: Optional[int] = None
    tx: Optional[int] = None
    reason: Optional[RejectionReason] = Field(None, description="Machine-readable rejection code")
    detail: Optional[str] = None
    account: Optional[AccountSnapshot] = Field(None, description="Account after the event")


class BatchResponse(BaseModel):
    accepted: int = Field(..., description="Number of accepted events")
    rejected: int = Field(..., description="Number of rejected events")
    outcomes: List[Outcome]


class ErrorResponse(BaseModel):
    detail: str = Field(..., description="Error description")
    error_code: str = Field(..., description="Machine-readable error code")
    timestamp: datetime = Field(default_factory=datetime.now, description="Error timestamp")


class HealthResponse(BaseModel):
    status: str = Field(..., description="Service health status")
    timestamp: datetime = Field(default_factory=datetime.now)
    accounts_count: int = Field(..., description="Number of accounts in the ledger")
    transfers_count: int = Field(..., description="Number of recorded deposits and withdrawals")


RawRecord = Dict[str, Any]
