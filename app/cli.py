"""Offline import of webhook payload files.

Usage:
    python -m app.cli import payloads/ --database-url sqlite:///./app.db

Prints the batch report as JSON. Exits 1 when any source failed.
"""

from __future__ import annotations

import argparse
import sys
from typing import Optional, Sequence

from .batch import BatchDriver, directory_sources
from .config import settings
from .engine import UpsertEngine
from .notifier import ChangeNotifier, LoggingSink
from .schemas import BatchReport
from .storage import Database, MessageStore


def import_directory(
    directory: str,
    database_url: str,
    source_timeout: Optional[float] = None,
) -> BatchReport:
    database = Database(database_url)
    database.open()
    try:
        with database.session() as db:
            driver = BatchDriver(
                UpsertEngine(MessageStore(db)),
                ChangeNotifier(LoggingSink()),
                source_timeout=source_timeout,
            )
            return driver.run_batch(directory_sources(directory))
    finally:
        database.close()


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="app.cli")
    subparsers = parser.add_subparsers(dest="command", required=True)

    import_parser = subparsers.add_parser("import", help="Import a directory of payload files")
    import_parser.add_argument("directory", nargs="?", default=settings.PAYLOAD_DIR)
    import_parser.add_argument("--database-url", default=settings.DATABASE_URL)
    import_parser.add_argument(
        "--timeout",
        type=float,
        default=settings.SOURCE_TIMEOUT_SECONDS,
        help="Per-source timeout in seconds",
    )

    args = parser.parse_args(argv)
    if args.command == "import":
        try:
            report = import_directory(args.directory, args.database_url, args.timeout)
        except OSError as exc:
            print(f"cannot read {args.directory}: {exc}", file=sys.stderr)
            return 2
        print(report.model_dump_json(indent=2))
        return 1 if report.sources_failed else 0
    return 2


if __name__ == "__main__":
    sys.exit(main())
