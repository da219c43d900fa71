#!/usr/bin/env python3
"""
Load or clear the development catalog

    python scripts/import_dev_data.py --import
    python scripts/import_dev_data.py --delete
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Ensure the backend directory is on sys.path for "tourbook.*" imports
PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT))

import structlog

from tourbook.core.logging import configure_logging
from tourbook.core.settings import get_settings
from tourbook.db.dev_data import delete_data, import_data
from tourbook.db.session import db_manager

logger = structlog.get_logger(__name__)

DATA_DIR = Path(__file__).resolve().parent / "dev-data"


async def main(args: argparse.Namespace) -> int:
    await db_manager.initialize()
    try:
        async with db_manager.get_session() as session:
            if args.delete:
                await delete_data(session)
                logger.info("Data successfully deleted!")
            else:
                counts = await import_data(session, Path(args.data_dir))
                logger.info("Data successfully loaded!", **counts)
    finally:
        await db_manager.close()
    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Load or clear the development catalog")
    action = parser.add_mutually_exclusive_group(required=True)
    action.add_argument("--import", dest="load", action="store_true", help="insert users, tours and reviews")
    action.add_argument("--delete", action="store_true", help="remove all catalog data")
    parser.add_argument("--data-dir", default=str(DATA_DIR), help="folder with tours/users/reviews JSON")

    configure_logging(get_settings())
    sys.exit(asyncio.run(main(parser.parse_args())))
