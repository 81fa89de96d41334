"""
Order Service — リクエスト / レスポンスモデル

JSON のフィールド名は camelCase (userId, shippingAddress, orderItems ...)。
Python 側では snake_case で扱う。
"""

from datetime import datetime
from decimal import Decimal
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer
from pydantic.alias_generators import to_camel

from .models import Order, OrderItem, OrderStatus

# 金額は内部では Decimal、JSON では数値として返す
Money = Annotated[
    Decimal, PlainSerializer(float, return_type=float, when_used="json")
]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Request Models ───────────────────────────────


class OrderItemRequest(CamelModel):
    product_id: int
    quantity: int


class CreateOrderRequest(CamelModel):
    user_id: int
    shipping_address: str | None = None
    items: list[OrderItemRequest] = Field(default_factory=list)


class UpdateStatusRequest(CamelModel):
    status: OrderStatus


# ── Response Models ──────────────────────────────


class OrderItemResponse(CamelModel):
    id: int | None = None
    product_id: int
    product_name: str | None = None
    quantity: int
    unit_price: Money
    total_price: Money

    @classmethod
    def from_item(cls, item: OrderItem) -> "OrderItemResponse":
        return cls(
            id=item.id,
            product_id=item.product_id,
            product_name=item.product_name,
            quantity=item.quantity,
            unit_price=item.unit_price,
            total_price=item.total_price,
        )


class OrderResponse(CamelModel):
    id: int
    user_id: int
    total_amount: Money
    status: OrderStatus
    order_date: datetime
    shipping_address: str | None = None
    order_items: list[OrderItemResponse] = Field(default_factory=list)

    @classmethod
    def from_order(cls, order: Order) -> "OrderResponse":
        return cls(
            id=order.id,
            user_id=order.user_id,
            total_amount=order.total_amount,
            status=order.status,
            order_date=order.order_date,
            shipping_address=order.shipping_address,
            order_items=[OrderItemResponse.from_item(i) for i in order.order_items],
        )
