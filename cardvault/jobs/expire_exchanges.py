"""
Scheduled job to expire stale exchanges.

Expires market listings older than the configured maximum age and
pending trades past their expiry. Can be run as a standalone script or
called from a scheduler. Nothing here is needed for correctness: an
expired trade already refuses acceptance on its own.
"""

import asyncio
import logging
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cardvault.db.database import async_session_factory
from cardvault.services.market import expire_stale_listings
from cardvault.services.trading import expire_trades
from cardvault.timeutil import utcnow

logger = logging.getLogger(__name__)


async def run_expiry(
    session_factory: async_sessionmaker[AsyncSession] = async_session_factory,
    now: datetime | None = None,
) -> dict[str, int]:
    """
    Run listing and trade expiry once.

    Returns:
        Dict with the number of listings and trades expired
    """
    now = now or utcnow()
    results = {"listings": 0, "trades": 0}

    try:
        async with session_factory() as session:
            results["listings"] = len(await expire_stale_listings(session, now=now))
    except Exception as e:
        logger.error("Error expiring listings: %s", e)

    try:
        async with session_factory() as session:
            results["trades"] = len(await expire_trades(session, now=now))
    except Exception as e:
        logger.error("Error expiring trades: %s", e)

    logger.info(
        "Expiry complete. Listings expired: %d, trades expired: %d",
        results["listings"],
        results["trades"],
    )
    return results


def main() -> None:
    """CLI entry point for running exchange expiry."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    asyncio.run(run_expiry())


if __name__ == "__main__":
    main()
