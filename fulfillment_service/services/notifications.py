import json
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment_service.models.notification import NotificationKind, NotificationLog, NotificationStatus
from fulfillment_service.models.order import Order
from fulfillment_service.repositories.notification import NotificationLogRepository
from fulfillment_service.repositories.order import OrderRepository
from fulfillment_service.services.sms import SmsClient

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """Best-effort customer notifications.

    Every attempt is recorded in ``notification_logs`` whatever its outcome,
    and nothing ever propagates to the caller.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession], sms_client: SmsClient) -> None:
        self.session_maker = session_maker
        self.sms_client = sms_client

    async def send_order_confirmation(self, order_id: str) -> bool:
        return await self._dispatch(order_id, NotificationKind.CONFIRMATION)

    async def send_order_failure(self, order_id: str) -> bool:
        return await self._dispatch(order_id, NotificationKind.FAILURE)

    @staticmethod
    def render(order: Order, kind: NotificationKind) -> str:
        if kind is NotificationKind.CONFIRMATION:
            return (
                f"Sizning buyurtmangiz qabul qilindi! Buyurtma raqami: {order.order_number}. "
                f"Chek: {order.receipt_url or 'Tayyorlanmoqda...'}"
            )
        return f"Buyurtmangiz {order.order_number} qayta ishlanmadi. Iltimos, qayta urinib ko'ring."

    async def _dispatch(self, order_id: str, kind: NotificationKind) -> bool:
        try:
            async with self.session_maker() as session:
                order = await OrderRepository(session).get_by_id(order_id)
                phone: Optional[str] = order.customer_phone if order else None
                message: Optional[str] = self.render(order, kind) if order else None

                status = NotificationStatus.FAILED
                try:
                    if not phone:
                        raise ValueError(f"Order {order_id} has no phone number")
                    response = json.dumps(await self.sms_client.send(phone, message))
                    status = NotificationStatus.SENT
                    logger.info(f"Sent {kind.value} notification for order {order_id}")
                except Exception as e:
                    response = f"{type(e).__name__}: {e}"
                    logger.error(f"Failed to send {kind.value} notification for order {order_id}: {response}")

                await NotificationLogRepository(session).create(NotificationLog(
                    order_id=order_id,
                    kind=kind.value,
                    phone=phone,
                    message=message,
                    status=status.value,
                    response=response
                ))
                return status is NotificationStatus.SENT
        except Exception as e:
            logger.error(f"Could not record {kind.value} notification for order {order_id}: {e}", exc_info=True)
            return False
