import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment_service.core.config import settings
from fulfillment_service.models.outbox import OutboxMessage
from fulfillment_service.repositories.outbox import OutboxRepository
from fulfillment_service.schemas.jobs import FulfillmentJob
from fulfillment_service.services.job_queue import JobQueue, job_queue

logger = logging.getLogger(__name__)

PURGE_INTERVAL_SECONDS = 3600
SWEEP_INTERVAL_SECONDS = 60


class JobRelay:
    """Moves staged fulfillment jobs from the outbox table onto the queue.

    Jobs are written in the same transaction as the change that asks for
    them, so a crash between commit and publish only delays a job. A job
    can be published more than once; the worker's claim drops duplicates.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        queue: JobQueue,
        poll_interval: float = 2,
        batch_size: int = 100,
        max_retries: int = 5,
        retention_hours: int = 24,
        captcha_sweep: Optional[Callable[[], Awaitable[int]]] = None
    ) -> None:
        self.session_maker = session_maker
        self.queue = queue
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.retention_hours = retention_hours
        self.captcha_sweep = captcha_sweep
        self._stopping = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            logger.warning("Job relay is already running")
            return

        self._stopping.clear()
        self._task = asyncio.create_task(self._run())
        logger.info(f"Job relay started (every {self.poll_interval}s, batches of {self.batch_size})")

    async def stop(self) -> None:
        if self._task is None:
            return

        self._stopping.set()
        await self._task
        self._task = None
        logger.info("Job relay stopped")

    async def _run(self) -> None:
        last_purge = time.monotonic()
        last_sweep = float("-inf")
        while not self._stopping.is_set():
            try:
                await self.relay_pending()
                if time.monotonic() - last_purge >= PURGE_INTERVAL_SECONDS:
                    await self.purge_relayed()
                    last_purge = time.monotonic()
                if self.captcha_sweep is not None and time.monotonic() - last_sweep >= SWEEP_INTERVAL_SECONDS:
                    last_sweep = time.monotonic()
                    await self.captcha_sweep()
            except Exception as e:
                logger.error(f"Job relay pass failed: {e}", exc_info=True)

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    async def relay_pending(self) -> int:
        """Publish one batch of staged jobs, oldest first."""
        async with self.session_maker() as session:
            repository = OutboxRepository(session)
            staged = await repository.pending(limit=self.batch_size, max_attempts=self.max_retries)
            if not staged:
                return 0

            relayed = 0
            for message in staged:
                if await self._relay(message, repository):
                    relayed += 1
            await session.commit()

        logger.debug(f"Relayed {relayed}/{len(staged)} staged jobs")
        return relayed

    async def _relay(self, message: OutboxMessage, repository: OutboxRepository) -> bool:
        try:
            job = FulfillmentJob.model_validate_json(message.payload)
        except ValidationError as e:
            # Parked for good: no number of retries makes the payload readable.
            message.publish_attempts = self.max_retries
            message.last_error = f"Unreadable job payload: {e.error_count()} errors"
            logger.error(f"Outbox message {message.id} holds an unreadable job, parking it")
            return False

        try:
            await self.queue.enqueue(job.order_id, job=job)
        except Exception as e:
            await repository.record_failure(message, f"{type(e).__name__}: {e}")
            level = logging.ERROR if message.publish_attempts >= self.max_retries else logging.WARNING
            logger.log(level, f"Could not publish {job.kind.value} job for order {job.order_id} "
                              f"({message.publish_attempts}/{self.max_retries}): {e}")
            return False

        await repository.mark_relayed(message)
        logger.info(f"Published {job.kind.value} job for order {job.order_id} (attempt {job.attempt})")
        return True

    async def purge_relayed(self, older_than_hours: Optional[int] = None) -> int:
        hours = older_than_hours if older_than_hours is not None else self.retention_hours
        async with self.session_maker() as session:
            deleted = await OutboxRepository(session).purge_relayed(hours)
            await session.commit()

        if deleted:
            logger.info(f"Purged {deleted} relayed outbox rows older than {hours}h")
        return deleted


def build_job_relay(session_maker: async_sessionmaker[AsyncSession],
                    captcha_sweep: Optional[Callable[[], Awaitable[int]]] = None) -> JobRelay:
    return JobRelay(
        session_maker,
        job_queue,
        poll_interval=settings.outbox_poll_interval,
        batch_size=settings.outbox_batch_size,
        max_retries=settings.outbox_max_retries,
        retention_hours=settings.outbox_retention_hours,
        captcha_sweep=captcha_sweep
    )
