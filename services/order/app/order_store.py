"""
Order Service — 注文ストア

Order 集約の永続化を担当する。オーケストレーターからはこのクラスの
save / find_* / count だけが見える。

  - save: id が無ければ注文と明細を INSERT して id を採番する。
          id があれば注文行 (status など) を UPDATE する。
          明細は作成時に 1 回だけ書き込む。
  - 単一レコードの読み書き以上の整合性 (楽観ロックなど) は持たない。
    同じ注文への同時更新は後勝ちになる。
"""

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlalchemy.orm import sessionmaker

from .models import Order, OrderItem, OrderStatus

metadata = MetaData()

orders_table = Table(
    "orders",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", BigInteger, nullable=False, index=True),
    Column("total_amount", Numeric(12, 2), nullable=False),
    Column("status", String(20), nullable=False),
    Column("order_date", DateTime(timezone=True), nullable=False),
    Column("shipping_address", Text),
)

order_items_table = Table(
    "order_items",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_id", Integer, ForeignKey("orders.id"), nullable=False, index=True),
    Column("product_id", BigInteger, nullable=False),
    Column("product_name", String(255)),
    Column("quantity", Integer, nullable=False),
    Column("unit_price", Numeric(12, 2), nullable=False),
    Column("total_price", Numeric(12, 2), nullable=False),
)


async def create_schema(engine: AsyncEngine) -> None:
    """テーブルが無ければ作成する (起動時に呼ぶ)。"""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


class OrderStore:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    async def save(self, order: Order) -> Order:
        async with self._session_factory() as session:
            if order.id is None:
                await self._insert(session, order)
            else:
                await session.execute(
                    update(orders_table)
                    .where(orders_table.c.id == order.id)
                    .values(
                        status=order.status.value,
                        shipping_address=order.shipping_address,
                    )
                )
            await session.commit()
        return order

    async def find_by_id(self, order_id: int) -> Order | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(orders_table).where(orders_table.c.id == order_id)
            )
            found = await self._load(session, result.fetchall())
        return found[0] if found else None

    async def find_by_user_id(self, user_id: int) -> list[Order]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(orders_table)
                .where(orders_table.c.user_id == user_id)
                .order_by(orders_table.c.id)
            )
            return await self._load(session, result.fetchall())

    async def find_all(self) -> list[Order]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(orders_table).order_by(orders_table.c.id)
            )
            return await self._load(session, result.fetchall())

    async def count(self) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count()).select_from(orders_table)
            )
            return result.scalar_one()

    # ── 内部処理 ─────────────────────────────────

    async def _insert(self, session: AsyncSession, order: Order) -> None:
        result = await session.execute(
            insert(orders_table).values(
                user_id=order.user_id,
                total_amount=order.total_amount,
                status=order.status.value,
                order_date=order.order_date,
                shipping_address=order.shipping_address,
            )
        )
        order.id = result.inserted_primary_key[0]

        for item in order.order_items:
            item_result = await session.execute(
                insert(order_items_table).values(
                    order_id=order.id,
                    product_id=item.product_id,
                    product_name=item.product_name,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    total_price=item.total_price,
                )
            )
            item.id = item_result.inserted_primary_key[0]
            item.order = order

    async def _load(self, session: AsyncSession, rows) -> list[Order]:
        """注文行と、それに属する明細をまとめて Order に組み立てる。"""
        if not rows:
            return []

        items_by_order: dict[int, list[OrderItem]] = {row.id: [] for row in rows}
        result = await session.execute(
            select(order_items_table)
            .where(order_items_table.c.order_id.in_(list(items_by_order)))
            .order_by(order_items_table.c.id)
        )
        for item_row in result.fetchall():
            items_by_order[item_row.order_id].append(
                OrderItem(
                    id=item_row.id,
                    product_id=item_row.product_id,
                    product_name=item_row.product_name,
                    quantity=item_row.quantity,
                    unit_price=item_row.unit_price,
                    total_price=item_row.total_price,
                )
            )

        orders = []
        for row in rows:
            order = Order(
                id=row.id,
                user_id=row.user_id,
                shipping_address=row.shipping_address,
                total_amount=row.total_amount,
                status=OrderStatus(row.status),
                order_date=row.order_date,
            )
            order.attach_items(items_by_order[row.id])
            orders.append(order)
        return orders
