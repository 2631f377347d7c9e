"""
OpenClaw Gateway 客户端模块。
通过 WebSocket 对接 OpenClaw 服务端，提供 request(method, params, timeout) 与事件订阅。
本地->服务端：local_to_server（聊天发送、历史/会话/健康拉取）。
服务端->本地：server_to_local（响应/事件日志、消息/会话/健康归一化）。
gateway_memory：流式回复累积与已推送消息去重。
"""
from .client import ConnectionState, GatewayConnection
from . import local_to_server
from . import server_to_local
from .errors import (
    ConnectError,
    GatewayClosingError,
    GatewayError,
    GatewayNotOpenError,
    RpcError,
    RpcTimeout,
)
from .gateway_memory import MessageDeduplicator, RunAccumulator
from .protocol import (
    PROTOCOL_VERSION,
    METHOD_CHAT_HISTORY,
    METHOD_CHAT_SEND,
    METHOD_SESSIONS_LIST,
    METHOD_HEALTH,
    METHOD_STATUS,
    build_connect_params,
    build_request_frame,
)

__all__ = [
    "ConnectionState",
    "GatewayConnection",
    "local_to_server",
    "server_to_local",
    "ConnectError",
    "GatewayClosingError",
    "GatewayError",
    "GatewayNotOpenError",
    "RpcError",
    "RpcTimeout",
    "MessageDeduplicator",
    "RunAccumulator",
    "PROTOCOL_VERSION",
    "METHOD_CHAT_HISTORY",
    "METHOD_CHAT_SEND",
    "METHOD_SESSIONS_LIST",
    "METHOD_HEALTH",
    "METHOD_STATUS",
    "build_connect_params",
    "build_request_frame",
]
