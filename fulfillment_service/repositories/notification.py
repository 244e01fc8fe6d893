from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment_service.models.notification import NotificationLog


class NotificationLogRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def create(self, log: NotificationLog) -> NotificationLog:
        self.session.add(log)
        await self.session.commit()
        return log
