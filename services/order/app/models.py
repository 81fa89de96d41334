"""
Order Service — ドメインモデル

Order は集約ルート、OrderItem は Order に完全に所有される明細。

  - total_amount は明細の total_price の合計 (作成時にオーケストレーターが計算)
  - OrderItem.total_price = unit_price × quantity (生成時に 1 回だけ計算)
  - 作成後に変更されるのは status だけ

状態遷移:
    PENDING / CONFIRMED / PROCESSING / SHIPPED / DELIVERED / CANCELLED
    遷移の制約は設けていない (どの状態からどの状態へも更新できる)
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class OrderItem:
    def __init__(
        self,
        product_id: int,
        product_name: str | None,
        quantity: int,
        unit_price: Decimal,
        total_price: Decimal | None = None,
        id: int | None = None,
    ) -> None:
        self.id = id
        self.product_id = product_id
        self.product_name = product_name
        self.quantity = quantity
        self.unit_price = unit_price
        # 復元時は保存済みの値をそのまま使う
        self.total_price = (
            unit_price * quantity if total_price is None else total_price
        )
        self.order: "Order | None" = None

    def __repr__(self) -> str:
        return (
            f"OrderItem(product_id={self.product_id!r}, quantity={self.quantity!r}, "
            f"unit_price={self.unit_price!r})"
        )


class Order:
    def __init__(
        self,
        user_id: int,
        shipping_address: str | None = None,
        total_amount: Decimal = Decimal("0"),
        status: OrderStatus = OrderStatus.PENDING,
        order_date: datetime | None = None,
        id: int | None = None,
    ) -> None:
        self.id = id
        self.user_id = user_id
        self.shipping_address = shipping_address
        self.total_amount = total_amount
        self.status = status
        self.order_date = order_date or datetime.now(timezone.utc)
        self.order_items: list[OrderItem] = []

    def attach_items(self, items: list[OrderItem]) -> None:
        """明細を所有させる (各明細の order をこの注文に向ける)。"""
        for item in items:
            item.order = self
        self.order_items = list(items)

    def __repr__(self) -> str:
        return (
            f"Order(id={self.id!r}, user_id={self.user_id!r}, "
            f"status={self.status.value}, total_amount={self.total_amount!r})"
        )
