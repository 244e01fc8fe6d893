import asyncio
import logging
from functools import lru_cache
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment_service.automation.checkout import CaptchaRequired
from fulfillment_service.automation.driver import AutomationDriver, build_driver
from fulfillment_service.core.clock import utcnow
from fulfillment_service.core.config import settings
from fulfillment_service.core.database import async_session_maker
from fulfillment_service.core.exceptions import (
    AutomationTimeoutError,
    ExternalAutomationError,
    FulfillmentError,
    OrderNotFoundError,
)
from fulfillment_service.models.order import OrderStatus
from fulfillment_service.repositories.captcha import CaptchaRepository
from fulfillment_service.repositories.order import OrderRepository
from fulfillment_service.schemas.jobs import FulfillmentJob, JobKind
from fulfillment_service.services.notifications import NotificationDispatcher
from fulfillment_service.services.retry import RetryPolicy
from fulfillment_service.services.sms import build_sms_client

logger = logging.getLogger(__name__)


class FulfillmentWorker:
    # Status a job must find the order in before it may take ownership.
    CLAIMABLE_FROM = {
        JobKind.FULFILL: OrderStatus.PENDING,
        JobKind.RESUME: OrderStatus.AWAITING_CAPTCHA,
    }
    # Slack past the job deadline before a PROCESSING claim counts as abandoned.
    CLAIM_GRACE_SECONDS = 60.0

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        driver: AutomationDriver,
        notifier: NotificationDispatcher,
        policy: Optional[RetryPolicy] = None,
        deadline_seconds: float = 300.0
    ) -> None:
        self.session_maker = session_maker
        self.driver = driver
        self.notifier = notifier
        self.policy = policy or RetryPolicy()
        self.deadline_seconds = deadline_seconds

    async def process(self, job: FulfillmentJob) -> None:
        async with self.session_maker() as session:
            repository = OrderRepository(session)

            order = await repository.get_by_id(job.order_id)
            if order is None:
                raise OrderNotFoundError(job.order_id)

            source = self.CLAIMABLE_FROM[job.kind]
            if not await repository.claim(order.id, source, stale_after=self.deadline_seconds + self.CLAIM_GRACE_SECONDS):
                logger.info(
                    f"Dropping {job.kind.value} job for order {order.id}: "
                    f"expected {source.value}, order is owned elsewhere or already settled"
                )
                return

            order = await repository.get_by_id(order.id, refresh=True)
            logger.info(f"Claimed order {order.id} (attempt {job.attempt}, {job.kind.value})")

            solution = None
            if job.kind is JobKind.RESUME:
                captcha = await CaptchaRepository(session).get_by_order_id(order.id)
                if captcha is not None and captcha.is_solved:
                    solution = captcha.solution

            try:
                result = await asyncio.wait_for(
                    self.driver.run(session, order, captcha_solution=solution),
                    timeout=self.deadline_seconds
                )
            except asyncio.TimeoutError as e:
                error = AutomationTimeoutError(
                    f"Order {order.id} exceeded the {self.deadline_seconds:.0f}s job deadline"
                )
                await self._handle_failure(session, job, source, error)
                raise error from e
            except FulfillmentError as e:
                await self._handle_failure(session, job, source, e)
                raise
            except Exception as e:
                error = ExternalAutomationError(f"{type(e).__name__}: {e}")
                await self._handle_failure(session, job, source, error)
                raise error from e

            if isinstance(result, CaptchaRequired):
                await repository.mark_awaiting_captcha(order.id)
                logger.info(f"Order {order.id} is awaiting a captcha solution")
                return

            await repository.mark_completed(order.id, result.receipt_url, result.external_order_id)
            logger.info(f"Order {order.id} completed, receipt {result.receipt_url}")

        await self.notifier.send_order_confirmation(job.order_id)

    async def _handle_failure(self, session: AsyncSession, job: FulfillmentJob,
                              source: OrderStatus, error: BaseException) -> None:
        await session.rollback()
        repository = OrderRepository(session)

        if self.policy.should_retry(error, job.attempt):
            # Hand the order back so the redelivered job can claim it again.
            await repository.release(job.order_id, source, error_message=str(error)[:500])
            logger.warning(f"Order {job.order_id} failed on attempt {job.attempt}, will be retried: {error}")
            return

        await repository.mark_failed(job.order_id, str(error))
        logger.error(f"Order {job.order_id} failed on attempt {job.attempt}: {error}")
        await self.notifier.send_order_failure(job.order_id)

    async def fail_expired_captchas(self) -> int:
        """Fail orders whose captcha expired unsolved and tell their customers."""
        now = utcnow()
        failed = []
        async with self.session_maker() as session:
            repository = OrderRepository(session)
            for order_id in await repository.expired_captcha_order_ids(now):
                if await repository.fail_abandoned_captcha(order_id, now):
                    failed.append(order_id)

        for order_id in failed:
            logger.warning(f"Order {order_id} failed: captcha expired unsolved")
            await self.notifier.send_order_failure(order_id)
        return len(failed)


@lru_cache
def get_worker() -> FulfillmentWorker:
    return FulfillmentWorker(
        async_session_maker,
        driver=build_driver(),
        notifier=NotificationDispatcher(async_session_maker, build_sms_client()),
        policy=RetryPolicy.from_settings(),
        deadline_seconds=settings.job_deadline_seconds
    )
