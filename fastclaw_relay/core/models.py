"""
中继在 Gateway、远端存储与本地命令之间传递的数据结构。
时间戳统一为毫秒级 epoch（与 Gateway、远端存储一致）。
"""
import time
from dataclasses import dataclass

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_SYSTEM = "system"
ROLES = (ROLE_USER, ROLE_ASSISTANT, ROLE_SYSTEM)

MAX_CONTENT_LENGTH = 4000

CRON_ACTIONS = ("enable", "disable", "run", "remove")


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Message:
    """归一化后的聊天消息（Gateway -> 远端存储）。"""
    session_key: str
    role: str
    content: str
    timestamp: int

    def to_store(self) -> dict:
        return {
            "sessionKey": self.session_key,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
        }


@dataclass
class Session:
    session_key: str
    title: str
    is_pinned: bool
    last_message_preview: str
    updated_at: int
    created_at: int

    def to_store(self) -> dict:
        return {
            "sessionKey": self.session_key,
            "title": self.title,
            "isPinned": self.is_pinned,
            "lastMessagePreview": self.last_message_preview,
            "updatedAt": self.updated_at,
            "createdAt": self.created_at,
        }


@dataclass
class OutboundMessage:
    """App 端写入、尚未转发给 Gateway 的消息；id 同时作为 chat.send 的幂等键。"""
    id: str
    session_key: str
    content: str


@dataclass
class CronAction:
    """App 端发起、待本地执行的定时任务操作。"""
    id: str
    job_id: str
    action: str
