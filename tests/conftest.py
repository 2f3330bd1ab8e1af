import os

# Must be set before config.get_settings() is first called.
os.environ.setdefault("APP_ENV", "testing")

from decimal import Decimal

import pytest

from config import get_settings
from logging_config import configure_logging
from repositories import InMemoryLedgerRepository, SQLiteLedgerRepository
from services import TransactionProcessor

configure_logging(get_settings())


@pytest.fixture(params=["sqlite", "memory"])
def ledger(request):
    """Each ledger test runs against both store implementations."""
    if request.param == "memory":
        repo = InMemoryLedgerRepository()
    else:
        repo = SQLiteLedgerRepository(":memory:")
    yield repo
    repo.close()


@pytest.fixture
def processor(ledger):
    return TransactionProcessor(ledger)


def apply_rows(processor, rows):
    """Apply (type, client, tx, amount) rows and return their outcomes."""
    outcomes = []
    for event_type, client, tx, amount in rows:
        outcomes.append(processor.process_record({
            "type": event_type,
            "client": client,
            "tx": tx,
            "amount": amount,
        }))
    return outcomes


def balances(account):
    return (account.available, account.held, account.total, account.locked)


def dec(value):
    return Decimal(str(value))
