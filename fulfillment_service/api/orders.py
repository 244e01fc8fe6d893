from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment_service.core.database import get_db
from fulfillment_service.models.order import OrderStatus
from fulfillment_service.schemas.order import OrderCreate, OrderPage, OrderResponse, OrderStats
from fulfillment_service.services.order import OrderService

router = APIRouter(prefix="/orders", tags=["orders"])


def get_order_service(db: AsyncSession = Depends(get_db)) -> OrderService:
    return OrderService(db)


@router.post("", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
async def create_order(
    order_data: OrderCreate,
    service: OrderService = Depends(get_order_service)
) -> OrderResponse:
    return await service.create_order(order_data)


@router.get("", response_model=OrderPage)
async def list_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    order_status: OrderStatus | None = Query(None, alias="status"),
    customer_id: str | None = None,
    service: OrderService = Depends(get_order_service)
) -> OrderPage:
    return await service.list_orders(
        page=page,
        limit=limit,
        status=order_status.value if order_status else None,
        customer_id=customer_id
    )


@router.get("/stats", response_model=OrderStats)
async def order_stats(service: OrderService = Depends(get_order_service)) -> OrderStats:
    return await service.get_stats()


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: str,
    service: OrderService = Depends(get_order_service)
) -> OrderResponse:
    return await service.get_order(order_id)
