"""
Notification Dispatcher
Enqueue-and-return delivery of status messages with per-job retry backoff.
"""

import asyncio
from typing import Dict, Optional, Set
from nelo.schemas.core import NotificationJob
from nelo.utils.config import settings
from nelo.utils.logger import get_logger

logger = get_logger("notification_dispatcher")


class NotificationDispatcher:
    """Delivers NotificationJobs through the chat channel. At-least-once."""

    def __init__(self, channel, store=None, max_attempts: Optional[int] = None,
                 backoff_seconds: Optional[float] = None, broadcast_delay: Optional[float] = None):
        self.channel = channel
        self.store = store
        self.max_attempts = max_attempts or settings.notification_max_attempts
        self.backoff_seconds = settings.notification_backoff_seconds if backoff_seconds is None else backoff_seconds
        self.broadcast_delay = settings.broadcast_delay_seconds if broadcast_delay is None else broadcast_delay
        self._queue: "asyncio.Queue[NotificationJob]" = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._retries: Set[asyncio.Task] = set()

    def enqueue(self, job: NotificationJob) -> None:
        """Queue a job without waiting for delivery."""
        self._queue.put_nowait(job)
        logger.debug(f"Queued {job.kind.value} notification for {job.user_id}")

    async def send(self, user_id: str, message: str) -> bool:
        """Single best-effort send; failures are logged, never raised."""
        try:
            result = await self.channel.send_message(user_id, message)
        except Exception as e:
            logger.error(f"Send to {user_id} raised: {e}")
            return False
        if not result.get("success"):
            logger.warning(f"Send to {user_id} failed: {result.get('error')}")
            return False
        return True

    async def _deliver(self, job: NotificationJob) -> None:
        job.attempts += 1
        if await self.send(job.user_id, job.message):
            logger.info(f"📨 Delivered {job.kind.value} to {job.user_id} (attempt {job.attempts})")
            return

        if job.attempts >= self.max_attempts:
            logger.error(f"Dropping {job.kind.value} for {job.user_id} after {job.attempts} attempts")
            return

        delay = self.backoff_seconds * 2 ** (job.attempts - 1)
        task = asyncio.create_task(self._requeue_later(job, delay))
        self._retries.add(task)
        task.add_done_callback(self._retries.discard)

    async def _requeue_later(self, job: NotificationJob, delay: float) -> None:
        await asyncio.sleep(delay)
        self._queue.put_nowait(job)

    async def _run(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self._deliver(job)
            except Exception as e:
                logger.exception(f"Notification worker error: {e}")
            finally:
                self._queue.task_done()

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run())
            logger.info("✅ Notification dispatcher started")

    async def stop(self) -> None:
        for task in [self._worker, *self._retries]:
            if task is not None:
                task.cancel()
        await asyncio.gather(*[t for t in [self._worker, *self._retries] if t is not None], return_exceptions=True)
        self._worker = None
        self._retries.clear()

    async def join(self) -> None:
        """Wait until every queued job and pending retry has been handled."""
        while True:
            await self._queue.join()
            if not self._retries:
                return
            await asyncio.gather(*list(self._retries), return_exceptions=True)

    async def broadcast(self, message: str, limit: int = 50) -> Dict[str, int]:
        """
        Send one message to up to `limit` users, spaced by the broadcast delay.

        A failed recipient is logged and skipped.
        """
        if self.store is None:
            raise RuntimeError("Broadcast needs a user store")

        users = await self.store.list_users(limit)
        sent = failed = 0
        logger.info(f"📢 Broadcasting to {len(users)} users")

        for index, user in enumerate(users):
            if index:
                await asyncio.sleep(self.broadcast_delay)
            if await self.send(user.whatsapp_number, message):
                sent += 1
            else:
                failed += 1

        logger.info(f"📢 Broadcast complete: {sent} sent, {failed} failed")
        return {"total": len(users), "sent": sent, "failed": failed}
