from datetime import datetime
from typing import Any, List
from pydantic import BaseModel, Field

from fulfillment_service.schemas.order import Pagination


class PaymentCreateRequest(BaseModel):
    order_id: str
    payment_method: str
    amount: float = Field(gt=0)


class PaymentVerifyRequest(BaseModel):
    transaction_id: str
    payment_method: str


class PaymentResult(BaseModel):
    success: bool
    message: str
    payment_url: str | None = None
    transaction_id: str | None = None
    amount: float | None = None
    status: Any = None


class PaymentCreateResponse(BaseModel):
    success: bool
    message: str
    payment_url: str | None = None
    transaction_id: str | None = None


class PaymentLogResponse(BaseModel):
    id: int
    order_id: str
    payment_method: str
    amount: float
    status: str
    transaction_id: str | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class PaymentLogPage(BaseModel):
    logs: List[PaymentLogResponse]
    pagination: Pagination
