"""
Gateway 中继内存：流式回复累积与已推送消息去重。
- 两者都是 Relay 实例自有的状态（非全局单例），只在事件循环线程中读写。
- RunAccumulator：按 runId 保存最新的 delta 文本，final 到达时合成完整回复。
- MessageDeduplicator：按内容哈希记录近 10 分钟内已推送的消息，重复同步不会重复写入远端。
"""
import hashlib
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from fastclaw_relay.core.models import ROLE_ASSISTANT, MAX_CONTENT_LENGTH, Message, now_ms
from fastclaw_relay.utils.logger import gateway_logger
from .server_to_local import flatten_content

# 去重哈希保留时长（秒）
DEDUP_RETENTION_SEC = 10 * 60


@dataclass
class _RunEntry:
    session_key: str
    text: str
    timestamp: int


class RunAccumulator:
    """
    流式回复累积器：每个进行中的 run 至多一条记录。
    delta 携带的是截至当前的完整文本，直接覆盖；final 可能不带内容（例如只有工具调用的轮次），
    此时以最后一次 delta 文本为准。
    """

    def __init__(self):
        self._runs: dict[str, _RunEntry] = {}

    def __len__(self):
        return len(self._runs)

    def __contains__(self, run_id):
        return run_id in self._runs

    def on_delta(self, run_id: str, session_key: str, content: Any, timestamp: Optional[int] = None) -> None:
        """记录 delta 文本；空文本不覆盖已有的部分文本。"""
        text = flatten_content(content)
        if not text:
            return
        self._runs[run_id] = _RunEntry(
            session_key=session_key,
            text=text,
            timestamp=timestamp if timestamp is not None else now_ms(),
        )

    def on_final(
        self,
        run_id: str,
        content: Any = None,
        session_key: Optional[str] = None,
        timestamp: Optional[int] = None,
    ) -> Optional[Message]:
        """
        结束一个 run：final 文本非空时以其为准，否则用最后一次 delta 文本。
        无论结果如何都删除该 run 的记录；文本去掉首尾空白后为空则返回 None。
        """
        entry = self._runs.pop(run_id, None)
        text = flatten_content(content) if content is not None else ""
        if not text and entry is not None:
            text = entry.text
        if not text.strip():
            return None
        key = session_key or (entry.session_key if entry else None)
        if not key:
            return None
        if entry is not None:
            ts = entry.timestamp
        else:
            ts = timestamp if timestamp is not None else now_ms()
        return Message(session_key=key, role=ROLE_ASSISTANT, content=text[:MAX_CONTENT_LENGTH], timestamp=ts)

    def discard(self, run_id: str) -> None:
        """丢弃 run（chat 事件 state=error 时调用）。"""
        if self._runs.pop(run_id, None) is not None:
            gateway_logger.debug(f"gateway_memory: 丢弃 run {run_id}")


def message_hash(message: Message) -> str:
    raw = f"{message.session_key}|{message.role}|{message.content}|{message.timestamp}"
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()


class MessageDeduplicator:
    """近期已推送消息的哈希表：hash -> 记录时间（秒）。clock 可注入便于测试。"""

    def __init__(self, retention: float = DEDUP_RETENTION_SEC, clock: Callable[[], float] = time.time):
        self.retention = retention
        self._clock = clock
        self._seen: dict[str, float] = {}

    def __len__(self):
        return len(self._seen)

    def should_push(self, message: Message) -> bool:
        """保留窗口内见过则返回 False；否则以当前时间记录并返回 True。"""
        h = message_hash(message)
        now = self._clock()
        seen_at = self._seen.get(h)
        if seen_at is not None and now - seen_at <= self.retention:
            return False
        self._seen[h] = now
        return True

    def forget(self, message: Message) -> None:
        """撤销记录（推送失败时调用，下次同步可重试）。"""
        self._seen.pop(message_hash(message), None)

    def prune(self, now: Optional[float] = None) -> int:
        """删除早于保留窗口的记录，返回删除条数。在每批推送前调用。"""
        cutoff = (now if now is not None else self._clock()) - self.retention
        stale = [h for h, ts in self._seen.items() if ts < cutoff]
        for h in stale:
            del self._seen[h]
        return len(stale)
