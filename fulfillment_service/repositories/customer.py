from typing import List
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment_service.models.customer import CartItem, Customer


class CustomerRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def store_external_credentials(self, customer_id: str, external_id: str, login: str, password: str) -> None:
        await self.session.execute(
            update(Customer)
            .where(Customer.id == customer_id)
            .values(external_id=external_id, external_login=login, external_password=password)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()


class CartRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def list_items(self, customer_id: str) -> List[CartItem]:
        result = await self.session.execute(
            select(CartItem)
            .where(CartItem.customer_id == customer_id)
            .order_by(CartItem.created_at, CartItem.id)
        )
        return list(result.scalars().all())

    async def clear(self, customer_id: str) -> None:
        await self.session.execute(
            delete(CartItem).where(CartItem.customer_id == customer_id)
        )
        await self.session.flush()
