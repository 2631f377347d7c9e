"""
OpenClaw Gateway 协议常量与帧编解码（无状态）。
三种帧：
- 请求 {type: "req", id, method, params}
- 响应 按 id 匹配，ok + payload（部分部署为 result，或字段直接平铺在顶层）/ error{message}
- 事件 event 或 type 为事件名，payload（少数为 data），可选递增 seq
"""
import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

PROTOCOL_VERSION = 3

# 常用方法名
METHOD_CONNECT = "connect"
METHOD_HEALTH = "health"
METHOD_STATUS = "status"
METHOD_CHAT_HISTORY = "chat.history"
METHOD_CHAT_SEND = "chat.send"
METHOD_SESSIONS_LIST = "sessions.list"

# 事件名
EVENT_CHAT = "chat"
EVENT_SESSIONS_UPDATED = "sessions.updated"
EVENT_HEALTH = "health"
EVENT_TICK = "tick"
EVENT_CONNECT_CHALLENGE = "connect.challenge"

# 握手成功的响应类型
HELLO_OK = "hello-ok"

# 客户端标识：后端中继以 operator 身份读写会话
DEFAULT_CLIENT_ID = "gateway-client"
DEFAULT_CLIENT_DISPLAY_NAME = "FastClaw Relay"
DEFAULT_CLIENT_MODE = "backend"
DEFAULT_ROLE = "operator"
DEFAULT_SCOPES = ("operator.read", "operator.write")


@dataclass
class RequestFrame:
    id: str
    method: str
    params: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"type": "req", "id": self.id, "method": self.method, "params": self.params}


@dataclass
class ResponseFrame:
    id: str
    ok: bool
    payload: Any = None
    error: Optional[str] = None


@dataclass
class EventFrame:
    """事件帧；未匹配到请求的推送也按事件处理，raw 保留原始字典。"""
    name: Optional[str]
    payload: Any = None
    seq: Optional[int] = None
    raw: dict = field(default_factory=dict)


def new_request_id() -> str:
    return str(uuid.uuid4())


def build_connect_params(
    *,
    token: str,
    version: str,
    platform: str,
    min_protocol: int = PROTOCOL_VERSION,
    max_protocol: int = PROTOCOL_VERSION,
    client_id: str = DEFAULT_CLIENT_ID,
    display_name: str = DEFAULT_CLIENT_DISPLAY_NAME,
    mode: str = DEFAULT_CLIENT_MODE,
    role: str = DEFAULT_ROLE,
    scopes=DEFAULT_SCOPES,
) -> dict:
    """构建 connect 请求的 params。内容与 connect.challenge 的具体字段无关，重发时保持一致。"""
    return {
        "minProtocol": min_protocol,
        "maxProtocol": max_protocol,
        "client": {
            "id": client_id,
            "displayName": display_name,
            "version": version,
            "platform": platform,
            "mode": mode,
        },
        "role": role,
        "scopes": list(scopes),
        "caps": [],
        "auth": {"token": token},
    }


def build_request_frame(method: str, params: dict = None) -> RequestFrame:
    """构建请求帧，id 为新的 UUID4。"""
    return RequestFrame(id=new_request_id(), method=method, params=params if params is not None else {})


def encode_frame(frame: RequestFrame) -> str:
    return json.dumps(frame.to_dict(), ensure_ascii=False)


def decode_frame(raw) -> Optional[dict]:
    """解析入站文本/字节为字典；无法解析或不是 JSON 对象时返回 None（由调用方静默丢弃）。"""
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            return None
    if not isinstance(raw, str):
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def is_response(data: dict) -> bool:
    return data.get("type") == "res"


def parse_response_frame(data: dict) -> ResponseFrame:
    """
    解析响应帧。payload 取值优先级：payload > result > 去掉信封字段后的顶层字典。
    ok 仅在显式为 False 时视为失败。
    """
    ok = data.get("ok") is not False
    error = None
    if not ok:
        err = data.get("error")
        if isinstance(err, dict):
            error = err.get("message") or "Gateway RPC error"
        elif isinstance(err, str) and err:
            error = err
        else:
            error = "Gateway RPC error"
    if "payload" in data:
        payload = data.get("payload")
    elif "result" in data:
        payload = data.get("result")
    else:
        payload = {k: v for k, v in data.items() if k not in ("id", "ok", "error") and not (k == "type" and v == "res")}
    return ResponseFrame(id=data.get("id"), ok=ok, payload=payload, error=error)


def parse_event_frame(data: dict) -> EventFrame:
    """解析事件帧。事件名取 event，缺省取 type；payload 缺省取 data。"""
    name = data.get("event") or data.get("type")
    payload = data.get("payload") if "payload" in data else data.get("data")
    seq = data.get("seq")
    if not isinstance(seq, int) or isinstance(seq, bool):
        seq = None
    return EventFrame(name=name if isinstance(name, str) else None, payload=payload, seq=seq, raw=data)


def response_type(payload: Any) -> Optional[str]:
    """connect 响应的逻辑类型（type 或 event 字段）。"""
    if not isinstance(payload, dict):
        return None
    kind = payload.get("type") or payload.get("event")
    return kind if isinstance(kind, str) else None
