"""Command line entry point.

USAGE:
    highload-settlement run                  # Run ingestion and confirmation loops
    highload-settlement init-db              # Create the schema (use alembic in production)
    highload-settlement allocate alice bob   # Allocate deposit addresses
    highload-settlement export               # Dump all allocations as JSON
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging

from highload_settlement.config import Settings, get_settings
from highload_settlement.service import SettlementService, build_allocator
from highload_settlement.storage.database import DatabaseManager
from highload_settlement.ton.address import format_address

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="highload-settlement",
        description="Exchange settlement for TON Highload Wallet V3",
    )
    commands = parser.add_subparsers(dest="command")
    commands.add_parser("run", help="Run the settlement loops until interrupted")
    commands.add_parser("init-db", help="Create all tables")
    allocate = commands.add_parser("allocate", help="Allocate deposit addresses for users")
    allocate.add_argument("user_ids", nargs="+", help="Exchange user ids")
    commands.add_parser("export", help="Print all user allocations as JSON")
    return parser


async def _allocate(settings: Settings, user_ids: list[str]) -> None:
    db = DatabaseManager(settings.database.url)
    try:
        allocator = build_allocator(settings, db.get_async_session)
        for user_id, allocation in (await allocator.allocate_many(user_ids)).items():
            print(f"{user_id}\t{allocation.subwallet_id}\t{allocation.address}")
            logger.debug("Deposit address for %s: %s", user_id, format_address(allocation.address))
    finally:
        await db.dispose_async()


async def _export(settings: Settings) -> None:
    db = DatabaseManager(settings.database.url)
    try:
        print(await build_allocator(settings, db.get_async_session).export_mappings())
    finally:
        await db.dispose_async()


async def _init_db(settings: Settings) -> None:
    db = DatabaseManager(settings.database.url)
    try:
        await db.init_schema_async()
    finally:
        await db.dispose_async()


def main(argv: list[str] | None = None) -> None:
    args = _build_parser().parse_args(argv)
    settings = get_settings()

    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("Configuration: %s", settings.redacted_summary())

    if args.command == "init-db":
        asyncio.run(_init_db(settings))
    elif args.command == "allocate":
        asyncio.run(_allocate(settings, args.user_ids))
    elif args.command == "export":
        asyncio.run(_export(settings))
    else:
        # Signing lives with key custody; run the withdrawal loop from code
        # that provides a BatchSender.
        with contextlib.suppress(KeyboardInterrupt):
            asyncio.run(SettlementService(settings).run())


if __name__ == "__main__":
    main()
