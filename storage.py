import sqlite3
from pathlib import Path
from typing import Union

MEMORY_DATABASE = ":memory:"

# Creation order matters: each table references the one before it.
SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS accounts (
        customer_id INTEGER NOT NULL PRIMARY KEY,
        available TEXT NOT NULL,
        held TEXT NOT NULL,
        total TEXT NOT NULL,
        locked INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS balance_transfers (
        customer_id INTEGER NOT NULL,
        tx_id INTEGER NOT NULL UNIQUE,
        kind TEXT NOT NULL CHECK (kind IN ('deposit', 'withdrawal')),
        amount TEXT NOT NULL,
        PRIMARY KEY (customer_id, tx_id),
        FOREIGN KEY (customer_id) REFERENCES accounts(customer_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS disputes (
        customer_id INTEGER NOT NULL,
        tx_id INTEGER NOT NULL,
        PRIMARY KEY (customer_id, tx_id),
        FOREIGN KEY (customer_id, tx_id) REFERENCES balance_transfers(customer_id, tx_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS resolutions (
        customer_id INTEGER NOT NULL,
        tx_id INTEGER NOT NULL,
        outcome TEXT NOT NULL CHECK (outcome IN ('resolve', 'chargeback')),
        PRIMARY KEY (customer_id, tx_id),
        FOREIGN KEY (customer_id, tx_id) REFERENCES disputes(customer_id, tx_id)
    )
    """,
)

TABLES = ("accounts", "balance_transfers", "disputes", "resolutions")


def connect(db_path: Union[str, Path] = MEMORY_DATABASE) -> sqlite3.Connection:
    """Open a connection with explicit transaction control and foreign keys enforced."""
    db_path = str(db_path)
    connection = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
    connection.row_factory = sqlite3.Row
    connection.execute("PRAGMA foreign_keys = ON")
    if db_path != MEMORY_DATABASE:
        connection.execute("PRAGMA journal_mode = WAL")
        connection.execute("PRAGMA synchronous = NORMAL")
    return connection


def drop_schema(connection: sqlite3.Connection) -> None:
    for table in reversed(TABLES):
        connection.execute(f"DROP TABLE IF EXISTS {table}")


def create_schema(connection: sqlite3.Connection, reset: bool = False) -> None:
    """Create the ledger tables. With reset, existing ledger data is dropped first."""
    if reset:
        drop_schema(connection)
    for statement in SCHEMA:
        connection.execute(statement)
