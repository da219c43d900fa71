#!/usr/bin/env python3
"""
Initialize database tables
Creates all tables defined in the SQLModel models
"""

import asyncio
import sys
from pathlib import Path

# Ensure the backend directory is on sys.path for "tourbook.*" imports
PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT))

import structlog
from sqlalchemy import inspect

from tourbook.core.logging import configure_logging
from tourbook.core.settings import get_settings
from tourbook.db.session import db_manager

logger = structlog.get_logger(__name__)


async def init_database() -> int:
    """Create missing tables and list what exists afterwards"""
    try:
        logger.info("Connecting to database...")
        await db_manager.initialize()
        await db_manager.init_db()

        async with db_manager.engine.connect() as conn:
            tables = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
        logger.info("Database tables created successfully", tables=tables)
        return 0

    except Exception as e:
        logger.error("Database initialization failed", error=str(e))
        return 1

    finally:
        await db_manager.close()


if __name__ == "__main__":
    configure_logging(get_settings())
    sys.exit(asyncio.run(init_database()))
