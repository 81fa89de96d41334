"""
Order Orchestrator — 注文ユースケース

注文の作成・取得・ステータス更新・キャンセルを担当する。
外部サービス (User / Product / Notification) と注文ストアを
決まった順序で呼び出す。

  注文作成フロー:
  ┌─────────────────────────────────────────────────────────┐
  │  0. トレース開始 (create_order)                          │
  │  1. User Service でユーザーを検証                         │
  │     └─ 存在しない → UserNotFound (何も保存しない)         │
  │  2. Product Service で明細ごとに商品情報を取得            │
  │     └─ 1 件でも失敗 → ProductResolutionFailed (中断)      │
  │  3. 明細を組み立て、合計金額を計算                         │
  │  4. 注文ストアに保存 (status = PENDING)                   │
  │  5. 確認通知を送信 (ベストエフォート)                      │
  │  6. トレース終了 → 保存済みの Order を返す                 │
  └─────────────────────────────────────────────────────────┘

どこで失敗しても、例外を呼び出し元に返す前に必ずトレースを終了する。
ステータスの遷移には制約を設けていない (任意の状態に更新できる)。
"""

import logging
from decimal import Decimal

from .errors import OrderNotFound, OrderServiceError, UserNotFound
from .gateways import NotificationGateway, ProductGateway, UserGateway
from .models import Order, OrderItem, OrderStatus
from .order_store import OrderStore
from .schemas import CreateOrderRequest
from .telemetry import TelemetryClient

logger = logging.getLogger(__name__)


class OrderOrchestrator:
    """注文ユースケースのオーケストレーター"""

    def __init__(
        self,
        store: OrderStore,
        users: UserGateway,
        products: ProductGateway,
        notifications: NotificationGateway,
        telemetry: TelemetryClient,
    ):
        self.store = store
        self.users = users
        self.products = products
        self.notifications = notifications
        self.telemetry = telemetry

    # ── Command 側 ───────────────────────────────

    async def create_order(
        self,
        request: CreateOrderRequest,
        http_method: str = "POST",
        http_url: str = "/api/orders",
    ) -> Order:
        """
        注文作成

        受信リクエスト 1 件 = トレース 1 本。処理中のゲートウェイ呼び出しは
        すべてこのトレースの子スパンとして記録される。
        """
        await self.telemetry.start_trace(
            "create_order", http_method, http_url, request.user_id
        )
        try:
            order = await self._place_order(request)
        except BaseException as e:
            # キャンセル (クライアント切断) でもトレースは閉じる
            status_code = e.status_code if isinstance(e, OrderServiceError) else 500
            await self.telemetry.finish_trace(
                "create_order", status_code, str(e) or type(e).__name__
            )
            raise

        await self.telemetry.log_event(f"Order created successfully with ID: {order.id}")
        await self.telemetry.finish_trace("create_order", 200)
        return order

    async def update_order_status(self, order_id: int, status: OrderStatus) -> Order:
        """ステータス更新 (status フィールドのみ上書きする)"""
        status = OrderStatus(status)
        await self.telemetry.log_event(
            f"Updating order status: {order_id} to {status.value}"
        )

        order = await self.get_order_by_id(order_id)
        order.status = status
        updated = await self.store.save(order)

        await self.telemetry.log_event(f"Order status updated successfully: {order_id}")
        await self.notifications.send_order_status_update(
            updated.id, updated.user_id, status.value
        )
        return updated

    async def cancel_order(self, order_id: int) -> None:
        """
        注文キャンセル

        現在の状態に関係なく CANCELLED にする (SHIPPED / DELIVERED でも)。
        削除はしない。
        """
        await self.telemetry.log_event(f"Cancelling order: {order_id}")

        order = await self.get_order_by_id(order_id)
        order.status = OrderStatus.CANCELLED
        await self.store.save(order)

        await self.telemetry.log_event(f"Order cancelled successfully: {order_id}")
        await self.notifications.send_order_cancellation(order.id, order.user_id)

    # ── Query 側 ─────────────────────────────────

    async def get_order_by_id(self, order_id: int) -> Order:
        order = await self.store.find_by_id(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    async def get_orders_by_user_id(self, user_id: int) -> list[Order]:
        return await self.store.find_by_user_id(user_id)

    async def get_all_orders(self) -> list[Order]:
        return await self.store.find_all()

    # ── 内部処理 ─────────────────────────────────

    async def _place_order(self, request: CreateOrderRequest) -> Order:
        user_id = request.user_id
        await self.telemetry.log_event(f"Order creation started for user: {user_id}")

        # ── Step 1: ユーザー検証 ────────────────────
        await self.telemetry.log_event(f"Validating user: {user_id}")
        if not await self.users.validate_user(user_id):
            await self.telemetry.log_event(f"User validation failed: {user_id}", "ERROR")
            raise UserNotFound(user_id)
        await self.telemetry.log_event(f"User validated successfully: {user_id}")

        # ── Step 2: 商品情報の取得 ──────────────────
        # 1 件ずつ順番に取得する。失敗した時点で例外が伝播し、注文全体が中断される
        await self.telemetry.log_event(f"Processing {len(request.items)} order items")
        items = []
        for line in request.items:
            product = await self.products.get_product(line.product_id)
            items.append(
                OrderItem(
                    product_id=product.id,
                    product_name=product.name,
                    quantity=line.quantity,
                    unit_price=product.price,
                )
            )

        # ── Step 3: 明細の組み立てと合計金額 ────────
        order = Order(user_id=user_id, shipping_address=request.shipping_address)
        order.attach_items(items)
        order.total_amount = sum((item.total_price for item in items), Decimal("0"))

        # ── Step 4: 保存 ────────────────────────────
        saved = await self.store.save(order)
        await self.telemetry.log_event(f"Order saved to database with ID: {saved.id}")

        # ── Step 5: 確認通知 (結果は使わない) ───────
        await self.notifications.send_order_confirmation(saved.id, saved.user_id)

        await self.telemetry.log_event(
            f"Order created successfully with total amount: {order.total_amount}"
        )
        logger.info("Order %s created for user %s", saved.id, saved.user_id)
        return saved
