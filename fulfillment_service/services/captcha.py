import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment_service.core.clock import ensure_utc, utcnow
from fulfillment_service.core.exceptions import (
    CaptchaAlreadySolvedError,
    CaptchaExpiredError,
    CaptchaNotFoundError,
)
from fulfillment_service.models.captcha import CaptchaSession
from fulfillment_service.repositories.captcha import CaptchaRepository
from fulfillment_service.repositories.outbox import OutboxRepository
from fulfillment_service.schemas.captcha import CaptchaResponse, CaptchaSolveResponse
from fulfillment_service.schemas.jobs import FulfillmentJob, JobKind

logger = logging.getLogger(__name__)


class CaptchaService:
    def __init__(self, session: AsyncSession, clock: Optional[Callable[[], datetime]] = None) -> None:
        self.session = session
        self.repository = CaptchaRepository(session)
        self.outbox_repository = OutboxRepository(session)
        self.clock = clock or utcnow

    async def _open_session(self, order_id: str, now: datetime) -> CaptchaSession:
        captcha = await self.repository.get_by_order_id(order_id)
        if captcha is None:
            raise CaptchaNotFoundError(order_id)
        if now > ensure_utc(captcha.expires_at):
            raise CaptchaExpiredError(order_id)
        if captcha.is_solved:
            raise CaptchaAlreadySolvedError(order_id)
        return captcha

    async def get_captcha(self, order_id: str) -> CaptchaResponse:
        captcha = await self._open_session(order_id, self.clock())
        return CaptchaResponse(
            order_id=captcha.order_id,
            image_url=captcha.image_url,
            iframe_url=captcha.iframe_url,
            expires_at=ensure_utc(captcha.expires_at)
        )

    async def submit_solution(self, order_id: str, solution: str) -> CaptchaSolveResponse:
        now = self.clock()
        await self._open_session(order_id, now)

        # A concurrent solve may have won between the read and this update.
        if not await self.repository.mark_solved(order_id, solution, now):
            await self.session.rollback()
            raise CaptchaAlreadySolvedError(order_id)

        await self.outbox_repository.add_job(FulfillmentJob(order_id=order_id, kind=JobKind.RESUME))
        await self.session.commit()

        logger.info(f"Captcha solved for order {order_id}, resumption staged")
        return CaptchaSolveResponse(success=True, order_id=order_id)
