import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment_service.core.exceptions import EmptyCartError, OrderNotFoundError
from fulfillment_service.models.order import Order, OrderItem, OrderStatus, PaymentStatus
from fulfillment_service.repositories.customer import CartRepository
from fulfillment_service.repositories.order import OrderRepository
from fulfillment_service.repositories.outbox import OutboxRepository
from fulfillment_service.schemas.jobs import FulfillmentJob
from fulfillment_service.schemas.order import OrderCreate, OrderPage, OrderResponse, OrderStats, Pagination

logger = logging.getLogger(__name__)


def generate_order_number() -> str:
    return f"ERS-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8].upper()}"


class OrderService:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.repository = OrderRepository(session)
        self.cart_repository = CartRepository(session)
        self.outbox_repository = OutboxRepository(session)

    async def create_order(self, order_data: OrderCreate) -> OrderResponse:
        cart_items = await self.cart_repository.list_items(order_data.customer_id)
        if not cart_items:
            raise EmptyCartError(order_data.customer_id)

        total_amount = sum(item.product.price * item.quantity for item in cart_items)

        order = Order(
            id=str(uuid.uuid4()),
            order_number=generate_order_number(),
            total_amount=total_amount,
            status=OrderStatus.PENDING.value,
            payment_status=PaymentStatus.PENDING.value,
            items=[
                OrderItem(product_id=item.product_id, quantity=item.quantity, price=item.product.price)
                for item in cart_items
            ],
            created_at=datetime.now(timezone.utc),
            updated_at=datetime.now(timezone.utc),
            **order_data.model_dump()
        )

        await self.repository.create(order)
        await self.cart_repository.clear(order_data.customer_id)
        await self.outbox_repository.add_job(FulfillmentJob(order_id=order.id))
        await self.session.commit()

        logger.info(f"Order {order.order_number} created and fulfillment job staged: {order.id}")

        return OrderResponse.model_validate(order)

    async def get_order(self, order_id: str) -> OrderResponse:
        order = await self.repository.get_by_id(order_id)
        if not order:
            raise OrderNotFoundError(order_id)
        return OrderResponse.model_validate(order)

    async def list_orders(self, page: int = 1, limit: int = 10, status: Optional[str] = None,
                          customer_id: Optional[str] = None) -> OrderPage:
        orders, total = await self.repository.list(page=page, limit=limit, status=status, customer_id=customer_id)
        return OrderPage(
            orders=[OrderResponse.model_validate(order) for order in orders],
            pagination=Pagination.build(page, limit, total)
        )

    async def get_stats(self) -> OrderStats:
        by_status, revenue = await self.repository.stats()
        return OrderStats(total=sum(by_status.values()), by_status=by_status, completed_revenue=revenue)
