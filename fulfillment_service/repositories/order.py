from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment_service.models.captcha import CaptchaSession
from fulfillment_service.models.order import Order, OrderStatus


class OrderRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def create(self, order: Order) -> Order:
        self.session.add(order)
        await self.session.flush()
        return order

    async def get_by_id(self, order_id: str, refresh: bool = False) -> Optional[Order]:
        stmt = select(Order).where(Order.id == order_id)
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list(self, page: int = 1, limit: int = 10, status: Optional[str] = None,
                   customer_id: Optional[str] = None) -> Tuple[List[Order], int]:
        filters = []
        if status:
            filters.append(Order.status == status)
        if customer_id:
            filters.append(Order.customer_id == customer_id)

        result = await self.session.execute(
            select(Order).where(*filters)
            .order_by(Order.created_at.desc(), Order.id)
            .offset((page - 1) * limit).limit(limit)
        )
        total = (await self.session.execute(
            select(func.count()).select_from(Order).where(*filters)
        )).scalar_one()
        return list(result.scalars().all()), total

    async def stats(self) -> Tuple[dict[str, int], float]:
        counts = await self.session.execute(
            select(Order.status, func.count()).group_by(Order.status)
        )
        revenue = await self.session.execute(
            select(func.coalesce(func.sum(Order.total_amount), 0))
            .where(Order.status == OrderStatus.COMPLETED.value)
        )
        return {status: count for status, count in counts.all()}, float(revenue.scalar_one())

    async def claim(self, order_id: str, from_status: OrderStatus, stale_after: Optional[float] = None) -> bool:
        """Compare-and-set the order into PROCESSING.

        Only one execution can win the conditional update, which is what
        keeps two workers from driving the same order at once. With
        ``stale_after`` set, a PROCESSING claim older than that many seconds
        is taken over as well: its worker died without settling the order.
        """
        now = datetime.now(timezone.utc)
        claimable = Order.status == from_status.value
        if stale_after is not None:
            claimable = or_(claimable, and_(
                Order.status == OrderStatus.PROCESSING.value,
                Order.claimed_at.is_not(None),
                Order.claimed_at < now - timedelta(seconds=stale_after),
            ))

        result = await self.session.execute(
            update(Order)
            .where(Order.id == order_id, claimable)
            .values(status=OrderStatus.PROCESSING.value, claimed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return result.rowcount == 1

    async def expired_captcha_order_ids(self, now: datetime) -> List[str]:
        result = await self.session.execute(
            select(Order.id)
            .join(CaptchaSession, CaptchaSession.order_id == Order.id)
            .where(
                Order.status == OrderStatus.AWAITING_CAPTCHA.value,
                CaptchaSession.is_solved.is_(False),
                CaptchaSession.expires_at < now,
            )
        )
        return list(result.scalars().all())

    async def fail_abandoned_captcha(self, order_id: str, now: datetime) -> bool:
        # Re-checked in the update itself so a solve landing in between wins.
        unsolved = select(CaptchaSession.id).where(
            CaptchaSession.order_id == order_id,
            CaptchaSession.is_solved.is_(False),
            CaptchaSession.expires_at < now,
        ).exists()
        result = await self.session.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == OrderStatus.AWAITING_CAPTCHA.value, unsolved)
            .values(status=OrderStatus.FAILED.value, error_message="Captcha was not solved in time", updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return result.rowcount == 1

    async def release(self, order_id: str, to_status: OrderStatus, error_message: str | None = None) -> None:
        await self._transition(order_id, status=to_status.value, error_message=error_message)

    async def mark_awaiting_captcha(self, order_id: str) -> None:
        await self._transition(
            order_id,
            status=OrderStatus.AWAITING_CAPTCHA.value,
            captcha_interrupts=Order.captcha_interrupts + 1,
        )

    async def mark_completed(self, order_id: str, receipt_url: str, external_order_id: str) -> None:
        await self._transition(
            order_id,
            status=OrderStatus.COMPLETED.value,
            receipt_url=receipt_url,
            external_order_id=external_order_id,
            error_message=None,
            completed_at=datetime.now(timezone.utc),
        )

    async def mark_failed(self, order_id: str, error_message: str) -> None:
        await self._transition(order_id, status=OrderStatus.FAILED.value, error_message=error_message[:500])

    async def set_payment_status(self, order_id: str, payment_status: str) -> None:
        await self.session.execute(
            update(Order)
            .where(Order.id == order_id)
            .values(payment_status=payment_status, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()

    async def _transition(self, order_id: str, **values) -> None:
        # Only the execution holding the PROCESSING claim may move the order on.
        await self.session.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == OrderStatus.PROCESSING.value)
            .values(updated_at=datetime.now(timezone.utc), **values)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
