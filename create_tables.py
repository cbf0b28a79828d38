#!/usr/bin/env python3
"""Create database tables and register the configured settlement policy"""

import asyncio
import logging
import sys

from sqlalchemy import text

from escrowpay.config import settings
from escrowpay.db.database import AsyncSessionLocal, close_db, engine, init_db
from escrowpay.services.policy import ensure_current_policy

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def create_tables() -> bool:
    """Create database tables"""
    try:
        logger.info("Starting table creation...")
        logger.info(f"Database URL (masked): {settings.database_url[:30]}...")

        # Test connection first
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
            logger.info("Database connection successful")

        await init_db()

        async with AsyncSessionLocal() as session:
            policy = await ensure_current_policy(session)
            await session.commit()
            logger.info(
                f"Settlement policy {policy.version}: platform fee {policy.platform_fee_bps} bps, "
                f"work initiation fee {policy.work_initiation_fee_bps} bps"
            )

        logger.info("Table creation completed successfully!")
        return True

    except Exception as e:
        logger.error(f"Failed to create tables: {e}")
        return False
    finally:
        await close_db()


if __name__ == "__main__":
    success = asyncio.run(create_tables())
    sys.exit(0 if success else 1)
