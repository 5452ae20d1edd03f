"""
Usage metering batch job.

Drains pending usage records and reports them to the marketplace Metering
API. Scheduled hourly; can also be run once from the command line.

Usage:
    python -m tenancy.jobs.process_usage_metering
"""

import asyncio
import logging
import sys
from datetime import datetime, timezone

from tenancy.integrations.marketplace.fulfillment_client import MarketplaceFulfillmentClient
from tenancy.services.usage_service import UsageMeteringService

logger = logging.getLogger(__name__)


class MeteringJobStats:
    """Track metering job run statistics."""

    def __init__(self):
        self.batch = None
        self.start_time = datetime.now(timezone.utc)

    def to_dict(self) -> dict:
        duration = (datetime.now(timezone.utc) - self.start_time).total_seconds()
        result = {"duration_seconds": duration}
        if self.batch is not None:
            result.update(self.batch.to_dict())
        return result


async def run_usage_metering() -> dict:
    """Run one metering pass with its own session and client."""
    from tenancy.database.session import get_session_factory

    stats = MeteringJobStats()
    session = get_session_factory()()
    try:
        async with MarketplaceFulfillmentClient() as client:
            service = UsageMeteringService(session, client)
            stats.batch = await service.process_pending_usage()
        return stats.to_dict()
    finally:
        session.close()


def main():
    """Entry point for running the metering job from command line."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    try:
        result = asyncio.run(run_usage_metering())
        logger.info("Usage metering completed", extra=result)
        sys.exit(0)
    except Exception as e:
        logger.error("Usage metering failed", extra={"error": str(e)}, exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
