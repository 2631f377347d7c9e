"""
本地 -> 服务端：统一封装中继对 Gateway 发出的请求。
每个函数对应一个 Gateway 方法，返回响应 payload；失败时抛出 GatewayError 子类，由调用方决定重试。
"""
import asyncio
import uuid
from typing import Any, Optional

from fastclaw_relay.utils.logger import gateway_logger
from .protocol import (
    METHOD_CHAT_HISTORY,
    METHOD_CHAT_SEND,
    METHOD_HEALTH,
    METHOD_SESSIONS_LIST,
    METHOD_STATUS,
)

DEFAULT_SESSION_KEY = "agent:main:main"
HISTORY_LIMIT = 50


async def send_chat(conn, session_key: str, message: str, idempotency_key: Optional[str] = None) -> Any:
    """
    向服务端发送聊天消息（chat.send）。
    idempotency_key 取 App 消息自身的 id：崩溃后重发同一条消息时 Gateway 不会产生重复轮次。
    返回 payload 一般含 runId、status。
    """
    params = {
        "sessionKey": (session_key or "").strip() or DEFAULT_SESSION_KEY,
        "message": message,
        "idempotencyKey": idempotency_key or str(uuid.uuid4()),
    }
    payload = await conn.request(METHOD_CHAT_SEND, params)
    gateway_logger.info(
        f"local_to_server: chat.send 已完成 sessionKey={params['sessionKey']} "
        f"idempotencyKey={params['idempotencyKey']}"
    )
    return payload


async def fetch_chat_history(conn, session_key: str, limit: int = HISTORY_LIMIT) -> Any:
    """拉取该会话最近 limit 条聊天历史（1..1000）。"""
    params = {
        "sessionKey": (session_key or "").strip() or DEFAULT_SESSION_KEY,
        "limit": max(1, min(1000, limit)),
    }
    return await conn.request(METHOD_CHAT_HISTORY, params)


async def fetch_sessions_list(conn) -> Any:
    """拉取会话列表（sessions.list）。"""
    return await conn.request(METHOD_SESSIONS_LIST, {})


async def fetch_health_and_status(conn) -> tuple[Any, Any]:
    """
    并发请求 health 与 status，单个失败时对应位置返回 None，不影响另一个。
    """
    results = await asyncio.gather(
        conn.request(METHOD_HEALTH, {}),
        conn.request(METHOD_STATUS, {}),
        return_exceptions=True,
    )
    out = []
    for method, result in zip((METHOD_HEALTH, METHOD_STATUS), results):
        if isinstance(result, asyncio.CancelledError):
            raise result
        if isinstance(result, Exception):
            gateway_logger.debug(f"local_to_server: {method} 失败: {result}")
            out.append(None)
        else:
            out.append(result)
    return out[0], out[1]
