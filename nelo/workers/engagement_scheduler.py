"""Background job scheduler: re-engagement nudges and price refresh."""

import asyncio
import random
from datetime import timedelta
from typing import Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from nelo.agents.response_builder import ResponseBuilder
from nelo.utils.config import settings
from nelo.utils.logger import get_logger
from nelo.schemas.core import utcnow

logger = get_logger("engagement_scheduler")


class EngagementScheduler:
    """Periodic jobs that share state with request handling only through the store."""

    def __init__(self, store, dispatcher, oracle=None,
                 min_delay: float = 1.0, max_delay: float = 4.0):
        self.store = store
        self.dispatcher = dispatcher
        self.oracle = oracle
        self.min_delay = min_delay
        self.max_delay = max_delay
        self.scheduler = AsyncIOScheduler(
            job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": 120},
            timezone="UTC",
        )

    def setup_jobs(self):
        self.scheduler.add_job(
            self.send_engagement_messages,
            trigger=IntervalTrigger(hours=settings.engagement_interval_hours),
            id="engagement_messages",
            name="Re-engage inactive users",
            replace_existing=True,
        )

        if self.oracle is not None:
            self.scheduler.add_job(
                self.oracle.refresh,
                trigger=IntervalTrigger(seconds=settings.price_refresh_seconds),
                id="price_refresh",
                name="Refresh gas price and rates",
                replace_existing=True,
                next_run_time=utcnow(),
            )

    def start(self):
        self.setup_jobs()
        self.scheduler.start()
        logger.info("✅ Engagement scheduler started")

    def shutdown(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Engagement scheduler stopped")

    async def send_engagement_messages(self, limit: Optional[int] = None) -> int:
        """Nudge users inactive for the configured number of days."""
        cutoff = utcnow() - timedelta(days=settings.inactive_days)
        users = await self.store.find_inactive_users(cutoff, limit or settings.engagement_limit)
        logger.info(f"🔔 Re-engaging {len(users)} inactive users")

        sent = 0
        for index, user in enumerate(users):
            if index:
                # spread sends to respect channel throughput
                await asyncio.sleep(random.uniform(self.min_delay, self.max_delay))
            if await self.dispatcher.send(user.whatsapp_number, ResponseBuilder.engagement(user)):
                sent += 1
        return sent
