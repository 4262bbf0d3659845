"""
isbnscout CLI - inspect and maintain the offline sync ledger.

Usage:
    isbnscout sync status [--json]
    isbnscout sync now
    isbnscout sync failed [--limit N] [--json]
    isbnscout sync requeue [ID...]
    isbnscout sync purge-failed
    isbnscout sync clear-pending --entity TYPE
    isbnscout sync cleanup
"""

import argparse
import logging
import sys

from isbnscout.cli.commands import add_sync_parser, cmd_sync
from isbnscout.config import load_settings
from isbnscout.errors import ConfigurationError, StoreError
from isbnscout.storage import open_storage

# Set up logging
logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="isbnscout",
        description="Offline-first storage and sync for ISBN Scout",
    )
    parser.add_argument("--db", help="Path to the local database", default=None)
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)
    add_sync_parser(subparsers)
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        settings = load_settings(db_path=args.db)
        storage = open_storage(settings)
    except (ConfigurationError, StoreError) as e:
        logger.error(f"Failed to open storage: {e}")
        sys.exit(1)

    try:
        if args.command == "sync":
            cmd_sync(args, storage)
    except (ValueError, TypeError) as e:
        logger.error(f"Input validation error: {e}")
        sys.exit(1)
    except StoreError as e:
        logger.error(f"Command failed: {e}")
        sys.exit(1)
    finally:
        storage.close()


if __name__ == "__main__":
    main()
