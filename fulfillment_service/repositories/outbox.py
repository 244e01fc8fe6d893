from datetime import datetime, timedelta, timezone
from typing import List, Optional
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment_service.models.outbox import OutboxMessage
from fulfillment_service.schemas.jobs import JOB_ROUTING_KEY, FulfillmentJob


class OutboxRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def add_job(self, job: FulfillmentJob) -> OutboxMessage:
        """Stage a job inside the caller's transaction; the caller commits."""
        message = OutboxMessage(
            order_id=job.order_id,
            routing_key=JOB_ROUTING_KEY,
            payload=job.model_dump_json(),
            created_at=datetime.now(timezone.utc)
        )
        self.session.add(message)
        await self.session.flush()
        return message

    async def pending(self, limit: int = 100, max_attempts: Optional[int] = None) -> List[OutboxMessage]:
        stmt = select(OutboxMessage).where(OutboxMessage.relayed_at.is_(None))
        if max_attempts is not None:
            stmt = stmt.where(OutboxMessage.publish_attempts < max_attempts)
        result = await self.session.execute(
            stmt.order_by(OutboxMessage.created_at, OutboxMessage.id).limit(limit)
        )
        return list(result.scalars().all())

    async def mark_relayed(self, message: OutboxMessage) -> None:
        message.relayed_at = datetime.now(timezone.utc)
        message.last_error = None
        await self.session.flush()

    async def record_failure(self, message: OutboxMessage, error: str) -> None:
        message.publish_attempts += 1
        message.last_error = error
        await self.session.flush()

    async def purge_relayed(self, older_than_hours: int) -> int:
        cutoff = datetime.now(timezone.utc) - timedelta(hours=older_than_hours)
        result = await self.session.execute(
            delete(OutboxMessage).where(
                OutboxMessage.relayed_at.isnot(None),
                OutboxMessage.relayed_at < cutoff
            )
        )
        await self.session.flush()
        return result.rowcount
