"""
Order Service — テレメトリ (分散トレース + ログイベント)

1 つの受信リクエストを 1 つのトレースとして扱い、その処理中に発生した
外部サービス呼び出し (User / Product / Notification) をすべて同じ
trace_id で関連付ける。

トレースコンテキストは ContextVar に保持する:
  - asyncio のタスクごとにコンテキストがコピーされるため、
    並行して処理されている別リクエストには見えない
  - 関数の引数で trace_id を引き回す必要がない

  ┌─────────────┐ start_trace  ┌────────────────────┐
  │ Orchestrator│ ───────────▶ │ ContextVar (task)  │
  │             │              │ trace_id / span_id │
  │  Gateways   │ ── record ─▶ │  (読み取りのみ)    │
  │             │ finish_trace │   → クリア         │
  └─────────────┘ ───────────▶ └────────────────────┘
                       │
                       ▼  POST /api/telemetry/events (best-effort)
                ┌──────────────────┐
                │ Telemetry Service│
                └──────────────────┘

テレメトリ送信はベストエフォート。イベントの POST はバックグラウンドの
タスクとして投げ、リクエスト処理はその完了を待たない。送信失敗は
握りつぶしてローカルにログを残すだけで、業務処理の結果には一切影響させない。
停止時は aclose() で送信待ちのイベントを送り切る。
"""

import asyncio
import logging
import time
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import uuid4

import httpx
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from . import config

logger = logging.getLogger(__name__)

EVENTS_PATH = "/api/telemetry/events"

_LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


# ── トレースコンテキスト ─────────────────────────


@dataclass(frozen=True)
class TraceContext:
    """1 リクエスト分の相関情報。永続化はしない。"""

    trace_id: str
    span_id: str
    start_time: float


_current_trace: ContextVar[TraceContext | None] = ContextVar(
    "order_service_trace", default=None
)


def current_trace() -> TraceContext | None:
    """現在の実行コンテキストに束縛されているトレースを返す。"""
    return _current_trace.get()


def clear_trace() -> None:
    _current_trace.set(None)


def new_trace_id() -> str:
    return f"trace_{uuid4().hex}"


def new_span_id() -> str:
    return f"span_{uuid4().hex[:16]}"


# ── イベント定義 ─────────────────────────────────


class TelemetryEvent(BaseModel):
    """テレメトリサービスに送るイベント (JSON は camelCase)"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    trace_id: str | None = None
    span_id: str | None = None
    parent_span_id: str | None = None
    service_name: str
    operation: str
    event_type: str
    timestamp: datetime
    duration_ms: int | None = None
    status: str = "SUCCESS"
    http_method: str | None = None
    http_url: str | None = None
    http_status_code: int | None = None
    user_id: str | None = None
    error_message: str | None = None
    level: str | None = None
    message: str | None = None
    metadata: str | None = None


# ── クライアント ─────────────────────────────────


class TelemetryClient:
    """トレースの開始・終了、子スパン、ログイベントを記録する。"""

    def __init__(
        self,
        base_url: str = config.TELEMETRY_SERVICE_URL,
        service_name: str = config.SERVICE_NAME,
        timeout: float = config.TELEMETRY_TIMEOUT_SECONDS,
        enabled: bool = config.TELEMETRY_ENABLED,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.service_name = service_name
        self.timeout = timeout
        self.enabled = enabled
        self.transport = transport
        self._pending: set[asyncio.Task] = set()

    async def start_trace(
        self,
        operation: str,
        http_method: str,
        http_url: str,
        user_id: object | None = None,
    ) -> str:
        """
        新しいトレースを開始し、現在のコンテキストに束縛する。

        受信リクエスト 1 件につき 1 回呼ぶ。戻り値は trace_id。
        """
        ctx = TraceContext(
            trace_id=new_trace_id(),
            span_id=new_span_id(),
            start_time=time.monotonic(),
        )
        _current_trace.set(ctx)

        self._send(
            TelemetryEvent(
                trace_id=ctx.trace_id,
                span_id=ctx.span_id,
                service_name=self.service_name,
                operation=operation,
                event_type="SPAN",
                timestamp=_now(),
                status="SUCCESS",
                http_method=http_method,
                http_url=http_url,
                user_id=None if user_id is None else str(user_id),
            )
        )
        return ctx.trace_id

    async def finish_trace(
        self,
        operation: str,
        http_status_code: int,
        error_message: str | None = None,
    ) -> None:
        """
        トレースを終了する。

        経過時間付きの完了イベントを送り、コンテキストをクリアする。
        トレースが開始されていなければ何もしない。
        """
        ctx = _current_trace.get()
        if ctx is None:
            return

        try:
            duration_ms = int((time.monotonic() - ctx.start_time) * 1000)
            self._send(
                TelemetryEvent(
                    trace_id=ctx.trace_id,
                    span_id=ctx.span_id,
                    service_name=self.service_name,
                    operation=operation,
                    event_type="SPAN",
                    timestamp=_now(),
                    duration_ms=duration_ms,
                    status="ERROR" if error_message else "SUCCESS",
                    http_status_code=http_status_code,
                    error_message=error_message or None,
                )
            )
        finally:
            clear_trace()

    async def record_child_call(
        self,
        service_name: str,
        operation: str,
        http_method: str,
        http_url: str,
        duration_ms: int,
        status_code: int,
    ) -> None:
        """
        外部サービス呼び出しを子スパンとして記録する。

        現在のトレースは読むだけで変更しない。トレースが無い場合は
        相関情報なしでイベントを送る。
        """
        ctx = _current_trace.get()
        self._send(
            TelemetryEvent(
                trace_id=ctx.trace_id if ctx else None,
                span_id=new_span_id(),
                parent_span_id=ctx.span_id if ctx else None,
                service_name=self.service_name,
                operation=f"{service_name}_{operation}",
                event_type="SPAN",
                timestamp=_now(),
                duration_ms=duration_ms,
                status="ERROR" if status_code >= 400 else "SUCCESS",
                http_method=http_method,
                http_url=http_url,
                http_status_code=status_code,
                metadata=f"Outbound call to {service_name}",
            )
        )

    async def log_event(self, message: str, level: str = "INFO") -> None:
        """現在の trace_id (あれば) を付けてログイベントを送る。"""
        ctx = _current_trace.get()
        level = level.upper()
        logger.log(
            _LOG_LEVELS.get(level, logging.INFO),
            "[%s] %s",
            ctx.trace_id if ctx else "-",
            message,
        )
        self._send(
            TelemetryEvent(
                trace_id=ctx.trace_id if ctx else None,
                span_id=ctx.span_id if ctx else None,
                service_name=self.service_name,
                operation="log",
                event_type="LOG",
                timestamp=_now(),
                status="ERROR" if level == "ERROR" else "SUCCESS",
                level=level,
                message=message,
            )
        )

    async def flush(self) -> None:
        """送信待ちのイベントがすべて送り終わるまで待つ。"""
        while self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    async def aclose(self) -> None:
        await self.flush()

    def _send(self, event: TelemetryEvent) -> None:
        """
        イベントの送信をスケジュールする (fire-and-forget)。

        呼び出し元は送信の完了を待たない。
        """
        if not self.enabled:
            return
        task = asyncio.create_task(self._deliver(event))
        # 完了するまで参照を保持する
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, event: TelemetryEvent) -> bool:
        """
        イベントを POST する。

        失敗しても例外は投げない。戻り値は送信できたかどうか。
        """
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self.transport
            ) as client:
                await client.post(
                    f"{self.base_url}{EVENTS_PATH}",
                    json=event.model_dump(mode="json", by_alias=True, exclude_none=True),
                )
            return True
        except Exception:
            logger.warning(
                "Failed to deliver telemetry event %s/%s",
                event.event_type,
                event.operation,
                exc_info=True,
            )
            return False


def _now() -> datetime:
    return datetime.now(timezone.utc)
