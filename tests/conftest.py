"""
テスト用フィクスチャ

外部サービス (User / Product / Notification / Telemetry) は 1 つの
httpx.MockTransport でまとめて模倣し、届いたリクエストを記録する。
注文ストアはメモリ上の実装に差し替える。
"""

import asyncio
import itertools
import json

import httpx
import pytest

from app.gateways import NotificationGateway, ProductGateway, UserGateway
from app.orchestrator import OrderOrchestrator
from app.telemetry import TelemetryClient, clear_trace

USER_URL = "http://user-service"
PRODUCT_URL = "http://product-service"
NOTIFICATION_URL = "http://notification-service"
TELEMETRY_URL = "http://telemetry-service"


class FakeBackends:
    """兄弟サービスの代役。unavailable に入れたサービスは接続エラーになる。"""

    def __init__(self) -> None:
        self.users: set[int] = {123}
        self.products: dict[int, str] = {}
        self.notification_status = 200
        self.unavailable: set[str] = set()
        self.requests: list[httpx.Request] = []
        self.telemetry_events: list[dict] = []
        self.notifications: list[tuple[str, dict]] = []

    def add_product(self, product_id: int, name: str, price: str) -> None:
        # 価格は JSON の数値リテラルとしてそのまま埋め込む
        self.products[product_id] = (
            f'{{"id": {product_id}, "name": "{name}", "price": {price}}}'
        )

    async def handler(self, request: httpx.Request) -> httpx.Response:
        # 並行リクエストが確実に交互に進むよう、毎回制御を手放す
        await asyncio.sleep(0)
        self.requests.append(request)

        segments = request.url.path.strip("/").split("/")
        service, last = segments[1], segments[-1]
        if service in self.unavailable:
            raise httpx.ConnectError(f"{service} unavailable", request=request)

        if service == "telemetry":
            self.telemetry_events.append(json.loads(request.content))
            return httpx.Response(200)
        if service == "users":
            if int(last) in self.users:
                return httpx.Response(200, json={"id": int(last)})
            return httpx.Response(404, json={"detail": "User not found"})
        if service == "products":
            body = self.products.get(int(last))
            if body is None:
                return httpx.Response(404, json={"detail": "Product not found"})
            return httpx.Response(
                200, content=body, headers={"Content-Type": "application/json"}
            )
        if service == "notifications":
            self.notifications.append((last, json.loads(request.content)))
            return httpx.Response(self.notification_status)
        return httpx.Response(404)

    # ── 検証用ヘルパー ───────────────────────────

    def paths(self, prefix: str) -> list[str]:
        return [r.url.path for r in self.requests if r.url.path.startswith(prefix)]

    def spans(self, operation: str | None = None) -> list[dict]:
        return [
            e
            for e in self.telemetry_events
            if e["eventType"] == "SPAN"
            and (operation is None or e["operation"] == operation)
        ]

    def logs(self) -> list[dict]:
        return [e for e in self.telemetry_events if e["eventType"] == "LOG"]

    def started(self, operation: str) -> dict:
        [event] = [e for e in self.spans(operation) if "durationMs" not in e]
        return event

    def finished(self, operation: str) -> dict:
        [event] = [e for e in self.spans(operation) if "durationMs" in e]
        return event


class InMemoryOrderStore:
    def __init__(self) -> None:
        self.orders = {}
        self.saved = []
        self._ids = itertools.count(1)

    async def save(self, order):
        self.saved.append(order)
        if order.id is None:
            order.id = next(self._ids)
            for item in order.order_items:
                item.order = order
        self.orders[order.id] = order
        return order

    async def find_by_id(self, order_id):
        return self.orders.get(order_id)

    async def find_by_user_id(self, user_id):
        return [o for o in self.orders.values() if o.user_id == user_id]

    async def find_all(self):
        return list(self.orders.values())

    async def count(self):
        return len(self.orders)


@pytest.fixture(autouse=True)
def _reset_trace():
    clear_trace()
    yield
    clear_trace()


@pytest.fixture
def backends():
    fake = FakeBackends()
    fake.add_product(1, "Wireless Gaming Mouse", "49.99")
    fake.add_product(2, "Mechanical Keyboard", "99.99")
    return fake


@pytest.fixture
def transport(backends):
    return httpx.MockTransport(backends.handler)


@pytest.fixture
def telemetry(transport):
    return TelemetryClient(
        base_url=TELEMETRY_URL, service_name="order-service", transport=transport
    )


@pytest.fixture
def store():
    return InMemoryOrderStore()


@pytest.fixture
def user_gateway(telemetry, transport):
    return UserGateway(telemetry, base_url=USER_URL, transport=transport)


@pytest.fixture
def product_gateway(telemetry, transport):
    return ProductGateway(telemetry, base_url=PRODUCT_URL, transport=transport)


@pytest.fixture
def notification_gateway(telemetry, transport):
    return NotificationGateway(telemetry, base_url=NOTIFICATION_URL, transport=transport)


@pytest.fixture
def orchestrator(store, user_gateway, product_gateway, notification_gateway, telemetry):
    return OrderOrchestrator(
        store=store,
        users=user_gateway,
        products=product_gateway,
        notifications=notification_gateway,
        telemetry=telemetry,
    )
