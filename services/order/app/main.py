"""
Order Service — FastAPI エントリーポイント

HTTP ルーティングは薄く保ち、業務ロジックはすべて OrderOrchestrator に任せる。
業務エラー (OrderServiceError) は例外ハンドラで HTTP ステータスに変換する。

  ┌──────────┐     ┌───────────────┐     ┌──────────────────────┐
  │  Client  │────▶│ Order Service │────▶│ User Service         │
  │          │     │  (このサービス)│────▶│ Product Service      │
  │          │     │               │────▶│ Notification Service │
  └──────────┘     └───────┬───────┘────▶│ Telemetry Service    │
                           │             └──────────────────────┘
                   ┌───────▼───────┐
                   │   Orders DB   │
                   └───────────────┘
"""

import logging
import sys
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import config
from .errors import OrderServiceError
from .gateways import NotificationGateway, ProductGateway, UserGateway
from .orchestrator import OrderOrchestrator
from .order_store import OrderStore, create_schema
from .schemas import CreateOrderRequest, OrderResponse, UpdateStatusRequest
from .telemetry import TelemetryClient

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)

logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    engine = create_async_engine(config.DATABASE_URL, echo=False)
    await create_schema(engine)
    async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    telemetry = TelemetryClient()
    app.state.orchestrator = OrderOrchestrator(
        store=OrderStore(async_session),
        users=UserGateway(telemetry),
        products=ProductGateway(telemetry),
        notifications=NotificationGateway(telemetry),
        telemetry=telemetry,
    )
    logger.info(
        "Order Service started (user=%s, product=%s, notification=%s, telemetry=%s)",
        config.USER_SERVICE_URL,
        config.PRODUCT_SERVICE_URL,
        config.NOTIFICATION_SERVICE_URL,
        config.TELEMETRY_SERVICE_URL,
    )
    yield
    await telemetry.aclose()
    await engine.dispose()


app = FastAPI(title="Order Service", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_orchestrator(request: Request) -> OrderOrchestrator:
    return request.app.state.orchestrator


@app.exception_handler(OrderServiceError)
async def order_service_error_handler(request: Request, exc: OrderServiceError):
    logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})


# ── Command Endpoints ────────────────────────────


@app.post("/api/orders", response_model=OrderResponse)
async def create_order(
    req: CreateOrderRequest,
    request: Request,
    orchestrator: OrderOrchestrator = Depends(get_orchestrator),
):
    """注文作成"""
    order = await orchestrator.create_order(
        req, http_method=request.method, http_url=str(request.url)
    )
    return OrderResponse.from_order(order)


@app.put("/api/orders/{order_id}/status", response_model=OrderResponse)
async def update_order_status(
    order_id: int,
    req: UpdateStatusRequest,
    orchestrator: OrderOrchestrator = Depends(get_orchestrator),
):
    """注文ステータス更新"""
    order = await orchestrator.update_order_status(order_id, req.status)
    return OrderResponse.from_order(order)


@app.delete("/api/orders/{order_id}", status_code=status.HTTP_204_NO_CONTENT)
async def cancel_order(
    order_id: int,
    orchestrator: OrderOrchestrator = Depends(get_orchestrator),
):
    """注文キャンセル (削除ではなく CANCELLED にする)"""
    await orchestrator.cancel_order(order_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ── Query Endpoints ──────────────────────────────


@app.get("/api/orders", response_model=list[OrderResponse])
async def list_orders(orchestrator: OrderOrchestrator = Depends(get_orchestrator)):
    orders = await orchestrator.get_all_orders()
    return [OrderResponse.from_order(o) for o in orders]


@app.get("/api/orders/user/{user_id}", response_model=list[OrderResponse])
async def list_user_orders(
    user_id: int,
    orchestrator: OrderOrchestrator = Depends(get_orchestrator),
):
    orders = await orchestrator.get_orders_by_user_id(user_id)
    return [OrderResponse.from_order(o) for o in orders]


@app.get("/api/orders/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: int,
    orchestrator: OrderOrchestrator = Depends(get_orchestrator),
):
    order = await orchestrator.get_order_by_id(order_id)
    return OrderResponse.from_order(order)


@app.get("/health")
async def health():
    return {"status": "ok", "service": config.SERVICE_NAME}
