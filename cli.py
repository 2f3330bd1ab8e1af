"""
Command line runner.

Reads deposit, withdrawal, dispute, resolve and chargeback records from a CSV
file with a ``type,client,tx,amount`` header, applies them in order and prints
one ``client,available,held,total,locked`` row per account.
"""

import argparse
import csv
import sys
from decimal import Decimal
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, TextIO, Union

import structlog

from config import get_settings
from errors import LedgerStorageError, MalformedRecord
from logging_config import configure_logging
from models import AccountSnapshot, RawRecord
from repositories import InMemoryLedgerRepository, LedgerRepository, SQLiteLedgerRepository
from services import TransactionProcessor
from storage import MEMORY_DATABASE

logger = structlog.get_logger()

REPORT_HEADER = ("client", "available", "held", "total", "locked")


def read_records(lines: Iterable[str]) -> Iterator[Union[RawRecord, MalformedRecord]]:
    """Yield one raw record per data row, or a MalformedRecord for rows that do not fit the header.

    Whitespace around fields is ignored and blank lines are skipped.
    """
    header: Optional[List[str]] = None
    for line_number, row in enumerate(csv.reader(lines), start=1):
        fields = [field.strip() for field in row]
        if not any(fields):
            continue
        if header is None:
            header = [field.lower() for field in fields]
            continue
        if len(fields) != len(header):
            yield MalformedRecord(
                f"Line {line_number}: expected {len(header)} fields, got {len(fields)}"
            )
            continue
        yield {name: (value or None) for name, value in zip(header, fields)}


def format_amount(value: Decimal) -> str:
    return format(value.normalize(), "f")


def render_report(snapshots: Iterable[AccountSnapshot], out: TextIO) -> None:
    writer = csv.writer(out, lineterminator="\n")
    writer.writerow(REPORT_HEADER)
    for snapshot in snapshots:
        writer.writerow((
            snapshot.client,
            format_amount(snapshot.available),
            format_amount(snapshot.held),
            format_amount(snapshot.total),
            "true" if snapshot.locked else "false",
        ))


def run(source: TextIO, ledger: LedgerRepository, out: TextIO, diagnostics: bool = False,
        verify: bool = False) -> int:
    processor = TransactionProcessor(ledger, diagnostics=diagnostics)
    for record in read_records(source):
        if isinstance(record, MalformedRecord):
            processor.reject(record)
        else:
            processor.process_record(record)

    logger.info(
        "Input processed",
        accepted=processor.accepted_count,
        rejected=processor.rejected_count
    )
    render_report(processor.snapshots(), out)

    if verify and processor.reconcile():
        return 2
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="payments-ledger",
        description="Apply a CSV stream of customer transactions and print account balances."
    )
    parser.add_argument("input", type=Path, help="CSV file with type,client,tx,amount columns")
    parser.add_argument(
        "--database",
        default=None,
        help="SQLite file for the ledger (default: an in-memory database)"
    )
    parser.add_argument(
        "--memory",
        action="store_true",
        help="keep the ledger in plain in-process maps instead of SQLite"
    )
    parser.add_argument(
        "--keep-existing",
        action="store_true",
        help="continue from the ledger already stored in --database instead of starting fresh"
    )
    parser.add_argument(
        "--diagnostics",
        action="store_true",
        help="log every rejected record to stderr"
    )
    parser.add_argument(
        "--verify",
        action="store_true",
        help="rebuild every account from the ledger and exit with status 2 on a mismatch"
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(settings)

    input_path: Path = args.input
    if not input_path.exists():
        print(f'error: "{input_path}" does not exist', file=sys.stderr)
        return 1
    if not input_path.is_file():
        print(f"error: {input_path} is not a file", file=sys.stderr)
        return 1

    diagnostics = args.diagnostics or settings.enable_diagnostics
    try:
        if args.memory:
            ledger: LedgerRepository = InMemoryLedgerRepository()
        else:
            ledger = SQLiteLedgerRepository(
                args.database or MEMORY_DATABASE,
                reset=not args.keep_existing
            )
    except LedgerStorageError as e:
        logger.error("Failed to open ledger", error=str(e))
        return 1

    try:
        with open(input_path, newline="", encoding="utf-8") as source:
            return run(source, ledger, sys.stdout, diagnostics=diagnostics, verify=args.verify)
    except OSError as e:
        print(f"failed to read {input_path}: {e}", file=sys.stderr)
        return 1
    except LedgerStorageError as e:
        logger.error("Ledger storage failure, aborting", error=str(e), exc_info=True)
        return 1
    finally:
        ledger.close()


if __name__ == "__main__":
    sys.exit(main())
