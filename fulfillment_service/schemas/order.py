from datetime import datetime
from typing import List
from pydantic import BaseModel, Field


class OrderCreate(BaseModel):
    customer_id: str
    customer_name: str = Field(min_length=2)
    customer_phone: str = Field(min_length=7)
    customer_email: str | None = None
    customer_address: str = Field(min_length=10)
    customer_region: str = Field(min_length=1)
    customer_district: str = Field(min_length=1)
    customer_notes: str | None = None
    payment_method: str = Field(min_length=1)


class OrderItemResponse(BaseModel):
    product_id: str
    quantity: int
    price: float

    model_config = {"from_attributes": True}


class OrderResponse(BaseModel):
    id: str
    order_number: str
    customer_id: str
    items: List[OrderItemResponse]
    total_amount: float
    status: str
    payment_status: str
    payment_method: str
    external_order_id: str | None = None
    receipt_url: str | None = None
    error_message: str | None = None
    completed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> "Pagination":
        return cls(page=page, limit=limit, total=total, pages=-(-total // limit))


class OrderPage(BaseModel):
    orders: List[OrderResponse]
    pagination: Pagination


class OrderStats(BaseModel):
    total: int
    by_status: dict[str, int]
    completed_revenue: float
