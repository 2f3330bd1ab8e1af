"""
Account projection.

Balance effects of each accepted event, and a fold that rebuilds an account
from its ledger rows. Every effect keeps total == available + held.
"""

from decimal import Decimal
from typing import Iterable

from models import Account, BalanceTransfer, TransferKind, TransferState


def credit(account: Account, amount: Decimal) -> None:
    account.available += amount
    account.total += amount


def debit(account: Account, amount: Decimal) -> None:
    account.available -= amount
    account.total -= amount


def hold(account: Account, transfer: BalanceTransfer) -> None:
    """Move a disputed transfer's funds into held.

    A disputed deposit is still in available, so it moves across. A disputed
    withdrawal already left available, so it comes back into total through held
    without becoming spendable.
    """
    if transfer.kind == TransferKind.deposit:
        account.available -= transfer.amount
    else:
        account.total += transfer.amount
    account.held += transfer.amount


def release(account: Account, transfer: BalanceTransfer) -> None:
    """Undo the hold of a resolved dispute."""
    account.held -= transfer.amount
    if transfer.kind == TransferKind.deposit:
        account.available += transfer.amount
    else:
        account.total -= transfer.amount


def charge_back(account: Account, transfer: BalanceTransfer) -> None:
    """Finalize a dispute against the customer's counterparty and freeze the account.

    Charged-back deposit funds leave the account; charged-back withdrawal
    funds are returned to available.
    """
    account.held -= transfer.amount
    if transfer.kind == TransferKind.deposit:
        account.total -= transfer.amount
    else:
        account.available += transfer.amount
    account.locked = True


def is_balanced(account: Account) -> bool:
    return account.total == account.available + account.held


def rebuild(client_id: int, transfers: Iterable[BalanceTransfer]) -> Account:
    """Fold a customer's transfers, with their dispute states, into a fresh account."""
    account = Account(client=client_id)
    for transfer in transfers:
        if transfer.kind == TransferKind.deposit:
            credit(account, transfer.amount)
        else:
            debit(account, transfer.amount)

        if transfer.state == TransferState.active:
            continue
        hold(account, transfer)
        if transfer.state == TransferState.resolved:
            release(account, transfer)
        elif transfer.state == TransferState.charged_back:
            charge_back(account, transfer)
    return account
