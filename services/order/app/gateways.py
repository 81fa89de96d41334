"""
Order Service — 外部サービスゲートウェイ

User / Product / Notification の 3 サービスへの薄い HTTP ラッパー。
呼び出しごとに所要時間とステータスコードを子スパンとして記録する。

失敗時の扱いはゲートウェイごとに異なる:

  User         → False を返す (例外なし)        記録: 200 / 404
  Product      → ProductResolutionFailed 送出   記録: 200 / 500
  Notification → 結果を返すだけ (握りつぶす)    記録: 応答コード / 500

ユーザーが存在しないことは「正常な否定結果」、商品が取得できないことは
注文作成を続けられない致命的なエラー、通知は届かなくても業務は成功。
"""

import json
import logging
import time
from dataclasses import dataclass
from decimal import Decimal

import httpx
from pydantic import BaseModel, Field

from . import config
from .errors import ProductResolutionFailed
from .telemetry import TelemetryClient

logger = logging.getLogger(__name__)


class ProductSnapshot(BaseModel):
    """Product Service から取得した商品情報 (注文明細にコピーされる)"""

    id: int
    name: str | None = None
    # 注文側は小数 2 桁で保存するため、それより細かい価格は受け付けない
    price: Decimal = Field(decimal_places=2)


@dataclass(frozen=True)
class NotificationResult:
    """通知の送信結果。オーケストレーターは参照せずに捨てる。"""

    delivered: bool
    status_code: int | None = None
    error: str | None = None


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class _Gateway:
    service_name = ""

    def __init__(
        self,
        base_url: str,
        telemetry: TelemetryClient | None,
        timeout: float = config.GATEWAY_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.telemetry = telemetry
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    async def _record(
        self, operation: str, method: str, url: str, started: float, status_code: int
    ) -> None:
        if self.telemetry is None:
            return
        await self.telemetry.record_child_call(
            self.service_name, operation, method, url, _elapsed_ms(started), status_code
        )


class UserGateway(_Gateway):
    service_name = "user-service"

    def __init__(
        self,
        telemetry: TelemetryClient,
        base_url: str = config.USER_SERVICE_URL,
        **kwargs,
    ):
        super().__init__(base_url, telemetry, **kwargs)

    async def validate_user(self, user_id: int) -> bool:
        """
        ユーザーが存在するか確認する。

        2xx なら True。404 を含むそれ以外の応答や通信エラーは False。
        """
        url = f"{self.base_url}/api/users/{user_id}"
        started = time.monotonic()
        try:
            async with self._client() as client:
                resp = await client.get(url, headers={"Accept": "application/json"})
                resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.info("User %s could not be validated: %s", user_id, e)
            await self._record("validate_user", "GET", url, started, 404)
            return False

        await self._record("validate_user", "GET", url, started, 200)
        return True


class ProductGateway(_Gateway):
    service_name = "product-service"

    def __init__(
        self,
        telemetry: TelemetryClient,
        base_url: str = config.PRODUCT_SERVICE_URL,
        **kwargs,
    ):
        super().__init__(base_url, telemetry, **kwargs)

    async def get_product(self, product_id: int) -> ProductSnapshot:
        """
        商品情報を取得する。

        取得できなければ ProductResolutionFailed を送出する (握りつぶさない)。
        """
        url = f"{self.base_url}/api/products/{product_id}"
        started = time.monotonic()
        try:
            async with self._client() as client:
                resp = await client.get(url, headers={"Accept": "application/json"})
                resp.raise_for_status()
            # 価格は float を経由せずに Decimal として読む
            product = ProductSnapshot.model_validate(
                json.loads(resp.text, parse_float=Decimal)
            )
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Product %s lookup failed: %s", product_id, e)
            await self._record("get_product", "GET", url, started, 500)
            raise ProductResolutionFailed(product_id, str(e)) from e

        await self._record("get_product", "GET", url, started, 200)
        return product


class NotificationGateway(_Gateway):
    """
    通知は fire-and-forget。

    送信に失敗しても例外は投げず、NotificationResult を返してログに残すだけ。
    テレメトリが未設定 (None) でも動作する。
    """

    service_name = "notification-service"

    def __init__(
        self,
        telemetry: TelemetryClient | None = None,
        base_url: str = config.NOTIFICATION_SERVICE_URL,
        **kwargs,
    ):
        super().__init__(base_url, telemetry, **kwargs)

    async def send_order_confirmation(
        self, order_id: int, user_id: int
    ) -> NotificationResult:
        return await self._post(
            "send_order_confirmation",
            "/api/notifications/order-confirmation",
            {"orderId": order_id, "userId": user_id},
        )

    async def send_order_status_update(
        self, order_id: int, user_id: int, status: str
    ) -> NotificationResult:
        return await self._post(
            "send_order_status_update",
            "/api/notifications/order-status",
            {"orderId": order_id, "userId": user_id, "status": status},
        )

    async def send_order_cancellation(
        self, order_id: int, user_id: int
    ) -> NotificationResult:
        return await self._post(
            "send_order_cancellation",
            "/api/notifications/order-cancellation",
            {"orderId": order_id, "userId": user_id},
        )

    async def _post(self, operation: str, path: str, body: dict) -> NotificationResult:
        url = f"{self.base_url}{path}"
        started = time.monotonic()
        status_code = 500
        try:
            async with self._client() as client:
                resp = await client.post(
                    url, json=body, headers={"Accept": "application/json"}
                )
                status_code = resp.status_code
                resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Failed to send %s notification: %s", operation, e)
            result = NotificationResult(False, status_code, str(e))
        else:
            result = NotificationResult(True, status_code)

        await self._record(operation, "POST", url, started, status_code)
        return result
