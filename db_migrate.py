"""Manual DB migration helper."""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from journalstore import logic
from journalstore.config import Settings, configure_logging
from journalstore.errors import StoreOpenError

logger = logging.getLogger("journalstore.migrate")


async def migrate(path: str, encrypt_legacy: bool = False) -> int:
    report = await logic.init_db(path)
    for name in report.columns_added:
        logger.info("added column %s", name)
    for name in report.constraints_removed:
        logger.info("removed constraint %s", name)
    for name in report.columns_failed + report.migrations_failed:
        logger.warning("not migrated: %s", name)
    if encrypt_legacy:
        count = await logic.encrypt_legacy_entries()
        logger.info("encrypted %d legacy entries", count)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    settings = Settings.from_env()
    parser = argparse.ArgumentParser(description="Create or upgrade the journal database.")
    parser.add_argument("db_path", nargs="?", default=settings.db_path)
    parser.add_argument(
        "--encrypt-legacy",
        action="store_true",
        help="also encrypt entries still stored as plaintext",
    )
    args = parser.parse_args(argv)
    configure_logging(settings.log_level)
    try:
        return asyncio.run(migrate(args.db_path, args.encrypt_legacy))
    except StoreOpenError as exc:
        logger.critical("FATAL: %s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
