from datetime import datetime
from typing import Optional
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment_service.models.captcha import CaptchaSession


class CaptchaRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_order_id(self, order_id: str) -> Optional[CaptchaSession]:
        result = await self.session.execute(
            select(CaptchaSession)
            .where(CaptchaSession.order_id == order_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def open(self, order_id: str, image_url: str | None, iframe_url: str | None,
                   created_at: datetime, expires_at: datetime) -> CaptchaSession:
        """Open a session for the order, replacing whatever stale one it had."""
        captcha = await self.get_by_order_id(order_id)
        if captcha is None:
            captcha = CaptchaSession(order_id=order_id)
            self.session.add(captcha)

        captcha.image_url = image_url
        captcha.iframe_url = iframe_url
        captcha.solution = None
        captcha.is_solved = False
        captcha.created_at = created_at
        captcha.expires_at = expires_at

        await self.session.commit()
        return captcha

    async def mark_solved(self, order_id: str, solution: str, now: datetime) -> bool:
        result = await self.session.execute(
            update(CaptchaSession)
            .where(
                CaptchaSession.order_id == order_id,
                CaptchaSession.is_solved.is_(False),
                CaptchaSession.expires_at >= now,
            )
            .values(solution=solution, is_solved=True)
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return result.rowcount == 1
