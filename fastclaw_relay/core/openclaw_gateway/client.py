"""
OpenClaw Gateway WebSocket 连接。
一个实例对应一次传输会话（单次使用）：
- open() 建立 WebSocket 并完成 connect 握手（等待 hello-ok）。
- request(method, params, timeout) 按 id 关联响应，响应乱序到达也能正确匹配。
- on_event(handler) 注册事件订阅；未匹配到请求的入站帧按注册顺序派发。
- close() 幂等；wait_for_close() 在传输关闭时返回。
所有状态只在事件循环线程中修改，不需要加锁。
"""
import asyncio
import enum
from dataclasses import dataclass
from typing import Any, Callable, Optional

import websockets
from websockets.exceptions import InvalidMessage, InvalidURI

from fastclaw_relay.utils.logger import gateway_logger
from fastclaw_relay.utils.platform_adapter import platform_name
from . import protocol
from . import server_to_local as stl
from .errors import (
    CONNECT_PROTOCOL,
    CONNECT_TIMEOUT,
    CONNECT_TRANSPORT,
    ConnectError,
    GatewayClosingError,
    GatewayError,
    GatewayNotOpenError,
    RpcError,
    RpcTimeout,
)

DEFAULT_REQUEST_TIMEOUT = 10.0
CONNECT_REQUEST_TIMEOUT = 12.0
HANDSHAKE_TIMEOUT = 15.0
# 建连后若 Gateway 未先发 connect.challenge，等待该时长后主动发送 connect
CONNECT_FALLBACK_DELAY = 0.2
CLOSE_GRACE = 0.5

# 周期同步的请求只记 debug，避免刷屏
_QUIET_METHODS = (
    protocol.METHOD_HEALTH,
    protocol.METHOD_STATUS,
    protocol.METHOD_SESSIONS_LIST,
    protocol.METHOD_CHAT_HISTORY,
)


class ConnectionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AWAITING_HELLO = "awaiting_hello"
    CONNECTED = "connected"
    CLOSING = "closing"


@dataclass
class PendingRequest:
    id: str
    method: str
    future: asyncio.Future
    timer: asyncio.TimerHandle


def _connection_error_message(exc: BaseException) -> str:
    """将建连异常转为可读提示。"""
    if isinstance(exc, ConnectionRefusedError):
        return "连接被拒绝：请确认 OpenClaw Gateway 已启动且端口正确（如 18789）"
    if isinstance(exc, ConnectionResetError):
        return "连接被重置：请确认 OpenClaw Gateway 已启动，且地址正确（如 ws://127.0.0.1:18789）"
    if isinstance(exc, InvalidURI):
        return f"Gateway 地址无效: {exc}"
    if isinstance(exc, InvalidMessage):
        return "未收到有效 HTTP 响应：目标地址可能不是 WebSocket 服务或服务未启动"
    return str(exc) or exc.__class__.__name__


def _consume_exception(fut: asyncio.Future) -> None:
    # hello 可能在 open() 已放弃等待后才被置为失败，这里读取异常避免事件循环告警
    if not fut.cancelled():
        fut.exception()


class GatewayConnection:
    """
    OpenClaw Gateway 连接（单次使用）。断线后由上层新建实例重连。
    connect_factory 默认 websockets.connect，测试时可注入假传输。
    """

    def __init__(
        self,
        url: str,
        token: str,
        *,
        client_version: str = "1.0.0",
        connect_factory: Optional[Callable[..., Any]] = None,
        handshake_timeout: float = HANDSHAKE_TIMEOUT,
    ):
        self.url = url
        self._token = token or ""
        self._client_version = client_version
        self._connect_factory = connect_factory or websockets.connect
        self._handshake_timeout = handshake_timeout
        self._state = ConnectionState.DISCONNECTED
        self._ws = None
        self._used = False
        self._closed = False
        self._dial: Optional[asyncio.Future] = None
        self._reader: Optional[asyncio.Task] = None
        self._hello: Optional[asyncio.Future] = None
        self._closed_future: Optional[asyncio.Future] = None
        self._fallback_timer: Optional[asyncio.TimerHandle] = None
        self._connect_tasks: set = set()
        self._connect_attempt = 0
        # req_id -> PendingRequest
        self._pending: dict[str, PendingRequest] = {}
        self._handlers: list[Callable[[protocol.EventFrame], None]] = []
        self.server_version: Optional[str] = None
        self.hello_payload: dict = {}

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def is_open(self) -> bool:
        return self._ws is not None and self._state in (
            ConnectionState.AWAITING_HELLO,
            ConnectionState.CONNECTED,
        )

    def on_event(self, handler: Callable[[protocol.EventFrame], None]) -> Callable[[], None]:
        """注册事件订阅，返回取消订阅函数。处理器抛异常只记日志，不影响其他订阅者。"""
        self._handlers.append(handler)

        def unsubscribe():
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    async def open(self) -> None:
        """建连并握手，整体受 handshake_timeout 约束；失败抛出 ConnectError 并释放传输。"""
        if self._used:
            raise ConnectError(CONNECT_PROTOCOL, "GatewayConnection 只能 open 一次，请新建实例")
        self._used = True
        loop = asyncio.get_running_loop()
        self._hello = loop.create_future()
        self._hello.add_done_callback(_consume_exception)
        self._closed_future = loop.create_future()
        self._state = ConnectionState.CONNECTING
        gateway_logger.info(f"Gateway 开始连接: {self.url}")
        try:
            await asyncio.wait_for(self._open_and_handshake(), timeout=self._handshake_timeout)
        except asyncio.TimeoutError:
            await self.close()
            raise ConnectError(CONNECT_TIMEOUT, "Gateway connect timeout") from None
        except ConnectError:
            await self.close()
            raise
        self._state = ConnectionState.CONNECTED
        gateway_logger.info(f"Gateway 握手成功: server.version={self.server_version}")

    async def _open_and_handshake(self) -> None:
        self._dial = asyncio.ensure_future(
            self._connect_factory(self.url, ping_interval=20, ping_timeout=10, max_size=2 ** 24)
        )
        try:
            ws = await self._dial
        except asyncio.CancelledError:
            if self._closed:
                raise ConnectError(CONNECT_TRANSPORT, "连接在握手完成前被关闭") from None
            raise
        except Exception as e:
            raise ConnectError(CONNECT_TRANSPORT, _connection_error_message(e)) from e
        if self._closed:
            await self._close_transport(ws)
            raise ConnectError(CONNECT_TRANSPORT, "连接在握手完成前被关闭")
        self._ws = ws
        self._state = ConnectionState.AWAITING_HELLO
        self._reader = asyncio.create_task(self._read_loop(ws))
        loop = asyncio.get_running_loop()
        self._fallback_timer = loop.call_later(CONNECT_FALLBACK_DELAY, self._start_connect_attempt)
        await asyncio.shield(self._hello)

    def _start_connect_attempt(self) -> None:
        """发送（或重发）connect 请求；只有最近一次尝试的失败会让握手失败。"""
        self._cancel_fallback()
        if self._hello is None or self._hello.done() or not self.is_open():
            return
        self._connect_attempt += 1
        task = asyncio.ensure_future(self._send_connect(self._connect_attempt))
        self._connect_tasks.add(task)
        task.add_done_callback(self._connect_tasks.discard)

    async def _send_connect(self, attempt: int) -> None:
        params = protocol.build_connect_params(
            token=self._token,
            version=self._client_version,
            platform=platform_name(),
        )
        gateway_logger.debug(f"Gateway 发送 connect（第 {attempt} 次）")
        try:
            payload = await self.request(protocol.METHOD_CONNECT, params, timeout=CONNECT_REQUEST_TIMEOUT)
        except RpcTimeout as e:
            self._fail_hello(ConnectError(CONNECT_TIMEOUT, str(e)), attempt)
            return
        except (GatewayClosingError, GatewayNotOpenError) as e:
            self._fail_hello(ConnectError(CONNECT_TRANSPORT, str(e)), attempt)
            return
        except GatewayError as e:
            self._fail_hello(ConnectError(CONNECT_PROTOCOL, f"connect 被拒绝: {e}"), attempt)
            return
        kind = protocol.response_type(payload)
        if kind != protocol.HELLO_OK:
            self._fail_hello(
                ConnectError(CONNECT_PROTOCOL, f"Unexpected connect response type: {kind or 'unknown'}"),
                attempt,
            )
            return
        server = payload.get("server") if isinstance(payload.get("server"), dict) else {}
        self.server_version = str(server.get("version") or "unknown")
        self.hello_payload = payload
        if not self._hello.done():
            self._hello.set_result(payload)

    def _fail_hello(self, error: ConnectError, attempt: Optional[int] = None) -> None:
        if self._hello is None or self._hello.done():
            return
        if attempt is not None and attempt != self._connect_attempt:
            gateway_logger.debug(f"Gateway 忽略已被取代的 connect 失败（第 {attempt} 次）: {error}")
            return
        self._hello.set_exception(error)

    def _cancel_fallback(self) -> None:
        if self._fallback_timer is not None:
            self._fallback_timer.cancel()
            self._fallback_timer = None

    async def request(self, method: str, params: Optional[dict] = None, timeout: float = DEFAULT_REQUEST_TIMEOUT) -> Any:
        """
        发送请求并等待响应 payload。
        未连接时立即抛 GatewayNotOpenError；超时抛 RpcTimeout；ok=false 抛 RpcError；
        连接关闭时抛 GatewayClosingError。
        """
        ws = self._ws
        if not self.is_open():
            raise GatewayNotOpenError("Gateway socket is not open")
        loop = asyncio.get_running_loop()
        frame = protocol.build_request_frame(method, params)
        while frame.id in self._pending:
            frame.id = protocol.new_request_id()
        fut = loop.create_future()
        timer = loop.call_later(timeout, self._expire, frame.id, timeout)
        self._pending[frame.id] = PendingRequest(frame.id, method, fut, timer)
        if method in _QUIET_METHODS:
            gateway_logger.debug(f"Gateway 请求: method={method} req_id={frame.id}")
        else:
            gateway_logger.info(f"Gateway 请求: method={method} req_id={frame.id}")
        try:
            try:
                await ws.send(protocol.encode_frame(frame))
            except Exception as e:
                if fut.done():
                    # 发送期间连接已关闭，沿用关闭时的错误
                    return fut.result()
                raise RpcError(f"Gateway 发送失败 method={method}: {e}") from e
            return await fut
        finally:
            self._discard_pending(frame.id)

    def _discard_pending(self, req_id: str) -> None:
        entry = self._pending.pop(req_id, None)
        if entry is not None:
            entry.timer.cancel()

    def _expire(self, req_id: str, timeout: float) -> None:
        entry = self._pending.pop(req_id, None)
        if entry is None or entry.future.done():
            return
        gateway_logger.warning(f"Gateway 请求超时: method={entry.method} req_id={req_id}")
        entry.future.set_exception(RpcTimeout(entry.method, timeout))

    def _reject_all(self, message: str) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for entry in pending:
            entry.timer.cancel()
            if not entry.future.done():
                entry.future.set_exception(GatewayClosingError(message))
        if pending:
            gateway_logger.info(f"Gateway {message}，已拒绝 {len(pending)} 个未完成请求")

    async def _read_loop(self, ws) -> None:
        try:
            while True:
                raw = await ws.recv()
                self._dispatch(raw)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            gateway_logger.debug(f"Gateway recv 结束: {e!r}")
        finally:
            self._on_transport_lost()

    def _dispatch(self, raw) -> None:
        data = protocol.decode_frame(raw)
        if data is None:
            gateway_logger.debug("Gateway 丢弃无法解析的帧")
            return
        rid = data.get("id")
        if isinstance(rid, str) and rid in self._pending:
            self._resolve(rid, protocol.parse_response_frame(data))
            return
        if protocol.is_response(data):
            gateway_logger.debug(f"Gateway 响应无对应请求（可能已超时）: req_id={rid}")
            return
        event = protocol.parse_event_frame(data)
        if event.name == protocol.EVENT_CONNECT_CHALLENGE:
            if self._state is ConnectionState.AWAITING_HELLO:
                gateway_logger.debug("Gateway 收到 connect.challenge，发送 connect")
                self._start_connect_attempt()
            return
        stl.on_event(event.name, event.payload)
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception as e:
                gateway_logger.exception(f"Gateway 事件处理器异常 event={event.name}: {e}")

    def _resolve(self, req_id: str, response: protocol.ResponseFrame) -> None:
        entry = self._pending.pop(req_id)
        entry.timer.cancel()
        stl.on_response(entry.method, response.ok, response.error)
        if entry.future.done():
            return
        if response.ok:
            entry.future.set_result(response.payload)
        else:
            entry.future.set_exception(RpcError(response.error))

    def _on_transport_lost(self) -> None:
        if self._closed_future is None or self._closed_future.done():
            return
        self._cancel_fallback()
        self._reject_all("Gateway connection closed")
        self._fail_hello(ConnectError(CONNECT_TRANSPORT, "Gateway closed before connect"))
        if self._state is not ConnectionState.CLOSING:
            self._state = ConnectionState.DISCONNECTED
        self._closed_future.set_result(None)
        gateway_logger.info("Gateway 连接已关闭")

    async def _close_transport(self, ws) -> None:
        try:
            await asyncio.wait_for(ws.close(code=1000, reason="fastclaw shutdown"), timeout=CLOSE_GRACE)
        except asyncio.TimeoutError:
            gateway_logger.debug("Gateway 关闭握手超时，直接释放")
        except Exception as e:
            gateway_logger.debug(f"Gateway 关闭传输出错: {e!r}")

    async def close(self) -> None:
        """幂等关闭：拒绝全部未完成请求，关闭传输并等待读循环结束（最多 CLOSE_GRACE 秒）。"""
        if self._closed:
            return
        self._closed = True
        if self._state is not ConnectionState.DISCONNECTED:
            self._state = ConnectionState.CLOSING
        self._cancel_fallback()
        self._reject_all("Gateway connection closing")
        self._fail_hello(ConnectError(CONNECT_TRANSPORT, "Gateway connection closing"))
        for task in list(self._connect_tasks):
            task.cancel()
        if self._dial is not None and not self._dial.done():
            self._dial.cancel()
        ws, self._ws = self._ws, None
        if ws is not None:
            await self._close_transport(ws)
        reader = self._reader
        if reader is not None and not reader.done():
            done, _ = await asyncio.wait({reader}, timeout=CLOSE_GRACE)
            if not done:
                reader.cancel()
        self._on_transport_lost()
        self._state = ConnectionState.DISCONNECTED

    async def wait_for_close(self) -> None:
        """传输关闭（对端断开、出错或 close()）时返回；只会完成一次。"""
        if self._closed_future is None:
            return
        await asyncio.shield(self._closed_future)
