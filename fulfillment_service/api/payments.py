from functools import lru_cache

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment_service.core.database import get_db
from fulfillment_service.schemas.payment import (
    PaymentCreateRequest,
    PaymentCreateResponse,
    PaymentLogPage,
    PaymentResult,
    PaymentVerifyRequest,
)
from fulfillment_service.services.payments import build_providers
from fulfillment_service.services.payments.base import PaymentProvider
from fulfillment_service.services.payments.service import PaymentService

router = APIRouter(prefix="/payments", tags=["payments"])


@lru_cache
def get_providers() -> dict[str, PaymentProvider]:
    return build_providers()


def get_payment_service(
    db: AsyncSession = Depends(get_db),
    providers: dict[str, PaymentProvider] = Depends(get_providers)
) -> PaymentService:
    return PaymentService(db, providers)


@router.post("/create", response_model=PaymentCreateResponse)
async def create_payment(
    body: PaymentCreateRequest,
    service: PaymentService = Depends(get_payment_service)
) -> PaymentCreateResponse:
    return await service.create_payment(body.order_id, body.payment_method, body.amount)


@router.post("/verify", response_model=PaymentResult)
async def verify_payment(
    body: PaymentVerifyRequest,
    service: PaymentService = Depends(get_payment_service)
) -> PaymentResult:
    return await service.verify_payment(body.transaction_id, body.payment_method)


@router.get("/logs", response_model=PaymentLogPage)
async def list_payment_logs(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    order_id: str | None = None,
    service: PaymentService = Depends(get_payment_service)
) -> PaymentLogPage:
    return await service.list_logs(page=page, limit=limit, order_id=order_id)
