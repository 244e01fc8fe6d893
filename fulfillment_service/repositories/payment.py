from typing import List, Optional, Tuple
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment_service.models.payment import PaymentLog


class PaymentLogRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def create(self, log: PaymentLog) -> PaymentLog:
        self.session.add(log)
        await self.session.commit()
        await self.session.refresh(log)
        return log

    async def update(self, log: PaymentLog) -> PaymentLog:
        await self.session.commit()
        await self.session.refresh(log)
        return log

    async def get_by_transaction_id(self, transaction_id: str) -> Optional[PaymentLog]:
        result = await self.session.execute(
            select(PaymentLog)
            .where(PaymentLog.transaction_id == transaction_id)
            .order_by(PaymentLog.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list(self, page: int = 1, limit: int = 10, order_id: str | None = None) -> Tuple[List[PaymentLog], int]:
        stmt = select(PaymentLog)
        count_stmt = select(func.count()).select_from(PaymentLog)
        if order_id:
            stmt = stmt.where(PaymentLog.order_id == order_id)
            count_stmt = count_stmt.where(PaymentLog.order_id == order_id)

        result = await self.session.execute(
            stmt.order_by(PaymentLog.created_at.desc()).offset((page - 1) * limit).limit(limit)
        )
        total = (await self.session.execute(count_stmt)).scalar_one()
        return list(result.scalars().all()), total
