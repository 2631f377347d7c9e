"""
服务端 -> 本地：收到响应/事件后的日志分类与数据归一化。

归一化规则（每种实体一个函数，字段取值优先级写在各函数说明里）：
- 消息内容：字符串原样；数组则拼接 type="text" 的片段（换行分隔）；空文本丢弃；最长 4000 字符。
- 角色：user / assistant / system 原样保留，其他（含 tool 类角色）按 assistant 处理；
  历史记录中的 tool / toolResult 条目直接跳过。
- 时间戳：数值（或数字字符串）取整为毫秒，否则取当前时间。

日志含义：
- 「事件 event=tick/health」：心跳与健康推送频率高，不记日志。
"""
from dataclasses import dataclass
from typing import Any, Optional

from fastclaw_relay.core.models import (
    MAX_CONTENT_LENGTH,
    ROLE_ASSISTANT,
    ROLES,
    Message,
    Session,
    now_ms,
)
from fastclaw_relay.utils.logger import gateway_logger

MAIN_SESSION_KEY = "agent:main:main"
MAIN_SESSION_TITLE = "Main Chat"

TOOL_ROLES = ("tool", "toolResult")

CHAT_STATE_DELTA = "delta"
CHAT_STATE_FINAL = "final"
CHAT_STATE_ERROR = "error"

_QUIET_EVENTS = ("tick", "health")


def on_response(method: str, ok: bool, error: Optional[str]) -> None:
    """响应到达、派发给等待方之前调用，仅用于日志。"""
    if ok:
        gateway_logger.debug(f"server_to_local: 响应 method={method} ok=True")
    else:
        gateway_logger.info(f"server_to_local: 响应 method={method} ok=False error={(error or '')[:80]}")


def on_event(event_name: Optional[str], payload: Any) -> None:
    """事件派发给订阅者之前调用，仅用于日志。"""
    if event_name in _QUIET_EVENTS:
        return
    gateway_logger.debug(f"server_to_local: 事件 event={event_name} payload={str(payload)[:300]}")


def flatten_content(content: Any) -> str:
    """结构化内容转为单个字符串：拼接 type="text" 且 text 为字符串的片段。"""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(
            part["text"]
            for part in content
            if isinstance(part, dict) and part.get("type") == "text" and isinstance(part.get("text"), str)
        )
    return ""


def normalize_role(role: Any, default: str = ROLE_ASSISTANT) -> str:
    return role if role in ROLES else default


def to_timestamp(value: Any, fallback: Optional[int] = None) -> int:
    """数值或数字字符串转为毫秒时间戳；无法转换时返回 fallback（缺省为当前时间）。"""
    if isinstance(value, bool):
        value = None
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            value = None
    if isinstance(value, (int, float)) and value == value and value not in (float("inf"), float("-inf")):
        return int(value)
    return fallback if fallback is not None else now_ms()


def _first_str(*values) -> Optional[str]:
    for v in values:
        if isinstance(v, str) and v:
            return v
    return None


def normalize_message(raw: Any, session_key: Optional[str] = None) -> Optional[Message]:
    """
    单条消息归一化。
    sessionKey 优先级：sessionKey > session_id > session > 参数 session_key。
    内容优先级：content（字符串或片段数组）> text。
    时间戳优先级：timestamp > ts > createdAt。
    """
    if not isinstance(raw, dict):
        return None
    key = _first_str(raw.get("sessionKey"), raw.get("session_id"), raw.get("session"), session_key)
    if not key:
        return None
    text = flatten_content(raw.get("content"))
    if not text.strip() and isinstance(raw.get("text"), str):
        text = raw["text"]
    if not text.strip():
        return None
    ts = raw.get("timestamp")
    if ts is None:
        ts = raw.get("ts")
    if ts is None:
        ts = raw.get("createdAt")
    return Message(
        session_key=key,
        role=normalize_role(raw.get("role")),
        content=text[:MAX_CONTENT_LENGTH],
        timestamp=to_timestamp(ts),
    )


def extract_gateway_messages(payload: Any, session_key: Optional[str] = None) -> list[Message]:
    """从响应 payload 中提取消息：payload.messages[]、payload.message、以及自带 sessionKey+content 的 payload 本身。"""
    if not isinstance(payload, dict):
        return []
    raw_messages = []
    if isinstance(payload.get("messages"), list):
        raw_messages.extend(payload["messages"])
    if isinstance(payload.get("message"), dict):
        raw_messages.append(payload["message"])
    if payload.get("sessionKey") and payload.get("content"):
        raw_messages.append(payload)
    messages = []
    for raw in raw_messages:
        msg = normalize_message(raw, session_key=session_key)
        if msg is not None:
            messages.append(msg)
    return messages


def extract_history_messages(session_key: str, payload: Any) -> list[Message]:
    """chat.history 响应归一化；跳过 tool 类条目，会话统一为请求的 session_key。"""
    raw_messages = payload.get("messages") if isinstance(payload, dict) else None
    if not isinstance(raw_messages, list):
        return []
    messages = []
    for raw in raw_messages:
        if not isinstance(raw, dict) or raw.get("role") in TOOL_ROLES:
            continue
        msg = normalize_message({**raw, "sessionKey": session_key})
        if msg is not None:
            messages.append(msg)
    return messages


def normalize_session(raw: Any) -> Optional[Session]:
    """
    会话归一化。
    key 优先级：sessionKey > key > id（须为非空字符串）。
    标题优先级：label > displayName > title > name > key；agent:main:main 固定显示为 Main Chat。
    预览优先级：lastMessagePreview > preview > lastMessage.content。
    更新时间：updatedAt > updated_at > lastMessageAt > 当前时间；创建时间：createdAt > created_at > 更新时间。
    """
    if not isinstance(raw, dict):
        return None
    key = _first_str(raw.get("sessionKey"), raw.get("key"), raw.get("id"))
    if not key:
        return None
    updated = raw.get("updatedAt")
    if updated is None:
        updated = raw.get("updated_at")
    if updated is None:
        updated = raw.get("lastMessageAt")
    updated_at = to_timestamp(updated)
    created = raw.get("createdAt")
    if created is None:
        created = raw.get("created_at")
    created_at = to_timestamp(created, updated_at)
    last_message = raw.get("lastMessage") if isinstance(raw.get("lastMessage"), dict) else {}
    preview = raw.get("lastMessagePreview")
    if not isinstance(preview, str):
        preview = raw.get("preview")
    if not isinstance(preview, str):
        preview = last_message.get("content")
    if not isinstance(preview, str):
        preview = ""
    title = _first_str(raw.get("label"), raw.get("displayName"), raw.get("title"), raw.get("name")) or key
    if key == MAIN_SESSION_KEY:
        title = MAIN_SESSION_TITLE
    pinned = raw.get("isPinned")
    if pinned is None:
        pinned = raw.get("pinned")
    return Session(
        session_key=key,
        title=title,
        is_pinned=bool(pinned),
        last_message_preview=preview,
        updated_at=updated_at,
        created_at=created_at,
    )


def extract_sessions(payload: Any) -> list[Session]:
    """sessions.list 响应：payload 本身为数组，或 payload.sessions 为数组。"""
    if isinstance(payload, list):
        raw_list = payload
    elif isinstance(payload, dict) and isinstance(payload.get("sessions"), list):
        raw_list = payload["sessions"]
    else:
        raw_list = []
    sessions = []
    for raw in raw_list:
        session = normalize_session(raw)
        if session is not None:
            sessions.append(session)
    return sessions


@dataclass
class ChatEvent:
    state: str
    run_id: str
    session_key: str
    message: Optional[dict]


def parse_chat_event(payload: Any) -> Optional[ChatEvent]:
    """chat 事件：须带 runId 与 sessionKey，否则返回 None。"""
    if not isinstance(payload, dict):
        return None
    run_id = payload.get("runId")
    session_key = payload.get("sessionKey")
    if not run_id or not isinstance(session_key, str) or not session_key:
        return None
    message = payload.get("message") if isinstance(payload.get("message"), dict) else None
    return ChatEvent(
        state=str(payload.get("state") or ""),
        run_id=str(run_id),
        session_key=session_key,
        message=message,
    )


def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _first_item(value: Any) -> dict:
    if isinstance(value, list) and value:
        return _as_dict(value[0])
    return {}


def _first_present(*values):
    for v in values:
        if v is not None:
            return v
    return None


def build_health_data(health: Any, status: Any) -> dict:
    """
    合并 health 与 status 响应为远端存储的 healthData。
    两个接口都有的字段一律 status 优先、health 兜底（默认模型/上下文、会话数、心跳设置）；
    渠道列表只来自 health；活跃会话模型只来自 status.sessions.recent（与默认模型相同时省略）。
    值为 None 的字段不输出。
    """
    h = _as_dict(health)
    h = _as_dict(h.get("status")) or h
    s = _as_dict(status)
    s = _as_dict(s.get("status")) or s

    channels = []
    h_channels = _as_dict(h.get("channels"))
    order = h.get("channelOrder") if isinstance(h.get("channelOrder"), list) else list(h_channels.keys())
    labels = _as_dict(h.get("channelLabels"))
    for channel_id in order:
        ch = h_channels.get(channel_id)
        if not isinstance(ch, dict):
            continue
        channels.append({
            "id": str(channel_id),
            "label": str(labels.get(channel_id) or channel_id),
            "configured": bool(ch.get("configured", False)),
            "running": bool(ch.get("running", False)),
            "linked": bool(ch.get("linked", False)),
        })

    s_sessions = _as_dict(s.get("sessions"))
    h_agent = _first_item(h.get("agents"))
    defaults = _as_dict(s_sessions.get("defaults")) or _as_dict(_as_dict(h_agent.get("sessions")).get("defaults"))
    session_count = _first_present(s_sessions.get("count"), _as_dict(h.get("sessions")).get("count"))

    recent = s_sessions.get("recent") if isinstance(s_sessions.get("recent"), list) else []
    recent = [r for r in recent if isinstance(r, dict)]
    main = next((r for r in recent if r.get("key") == MAIN_SESSION_KEY), recent[0] if recent else {})
    active_model = main.get("model")
    if active_model == defaults.get("model"):
        active_model = None

    s_heartbeat = _first_item(_as_dict(s.get("heartbeat")).get("agents"))
    h_heartbeat = _as_dict(h_agent.get("heartbeat"))
    heartbeat_every = _first_present(s_heartbeat.get("every"), h_heartbeat.get("every"))

    data = {
        "model": defaults.get("model"),
        "activeSessionModel": active_model,
        "contextTokens": defaults.get("contextTokens"),
        "sessionCount": session_count,
        "heartbeatEnabled": _first_present(s_heartbeat.get("enabled"), h_heartbeat.get("enabled")),
        "heartbeatInterval": str(heartbeat_every) if heartbeat_every is not None else None,
        "channels": channels,
    }
    return {k: v for k, v in data.items() if v is not None}


def resolve_server_version(server_version: Optional[str], health: Any) -> str:
    """Gateway 版本：connect 握手得到的 server.version 优先，其次 health.server.version。"""
    if server_version and server_version != "unknown":
        return server_version
    h = _as_dict(health)
    h = _as_dict(h.get("status")) or h
    return str(_as_dict(h.get("server")).get("version") or server_version or "unknown")
