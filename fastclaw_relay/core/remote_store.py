"""
远端持久化存储接口（RemoteStore）及其 Convex HTTP 实现。

RemoteStore 只声明中继需要调用的操作；存储引擎与查询语义由远端负责。
ConvexRemoteStore 通过 Convex HTTP API 调用函数：
    POST {convexUrl}/api/query    {"path": "sessions:getForInstance", "args": {...}, "format": "json"}
    POST {convexUrl}/api/mutation {"path": "messages:pushFromGateway", "args": {...}, "format": "json"}
成功返回 {"status": "success", "value": ...}，失败返回 {"status": "error", "errorMessage": ...}。
"""
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx

from fastclaw_relay.core.models import CronAction, Message, OutboundMessage, Session
from fastclaw_relay.utils.logger import logger

DEFAULT_TIMEOUT = 15.0


class RemoteStoreError(Exception):
    """远端函数调用失败（HTTP 错误或返回 status=error）。"""


class RemoteStore(ABC):
    """中继消费的远端存储操作。所有方法都是协程；失败时抛出异常，由调用方记录并在下轮重试。"""

    @abstractmethod
    async def push_message(self, message: Message) -> None:
        ...

    @abstractmethod
    async def mark_synced(self, message_ids: list[str]) -> None:
        ...

    @abstractmethod
    async def get_unsynced_messages(self) -> list[OutboundMessage]:
        ...

    @abstractmethod
    async def sync_sessions(self, sessions: list[Session]) -> None:
        ...

    @abstractmethod
    async def push_health(self, health_data: dict) -> None:
        ...

    @abstractmethod
    async def heartbeat(self, version: Optional[str] = None) -> None:
        ...

    @abstractmethod
    async def push_identity(self, identity: dict) -> None:
        ...

    @abstractmethod
    async def sync_skills(self, skills: list[dict]) -> None:
        ...

    @abstractmethod
    async def sync_cron_jobs(self, jobs: list[dict]) -> None:
        ...

    @abstractmethod
    async def get_pending_cron_actions(self) -> list[CronAction]:
        ...

    @abstractmethod
    async def complete_cron_action(self, action_id: str, status: str, error: Optional[str] = None) -> None:
        ...

    @abstractmethod
    async def get_sessions_for_instance(self) -> list[str]:
        """远端已知的该实例会话 key 列表（用于历史回填）。"""
        ...

    async def close(self) -> None:
        """释放底层资源；默认无操作。"""


def strip_none(value: Any) -> Any:
    """递归去掉值为 None 的字段：Convex 的 optional 参数不接受 null。"""
    if isinstance(value, dict):
        return {k: strip_none(v) for k, v in value.items() if v is not None}
    if isinstance(value, list):
        return [strip_none(v) for v in value]
    return value


class ConvexRemoteStore(RemoteStore):
    """
    基于 Convex HTTP API 的 RemoteStore。每次调用都带 instanceId。

    用法:
        store = ConvexRemoteStore("https://xxx.convex.cloud", "inst-1")
        await store.heartbeat("2026.1.0")
        await store.close()
    """

    def __init__(
        self,
        convex_url: str,
        instance_id: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (convex_url or "").rstrip("/")
        self.instance_id = instance_id
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _call(self, kind: str, path: str, args: dict) -> Any:
        client = await self._get_client()
        body = {"path": path, "args": strip_none(args), "format": "json"}
        try:
            response = await client.post(f"/api/{kind}", json=body)
        except httpx.HTTPError as e:
            raise RemoteStoreError(f"{path}: {e.__class__.__name__}: {e}") from e
        try:
            data = response.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            raise RemoteStoreError(f"{path}: HTTP {response.status_code} {response.text[:200]}")
        if data.get("status") != "success":
            message = data.get("errorMessage") or f"HTTP {response.status_code}"
            raise RemoteStoreError(f"{path}: {message}")
        return data.get("value")

    async def query(self, path: str, args: dict) -> Any:
        return await self._call("query", path, args)

    async def mutation(self, path: str, args: dict) -> Any:
        return await self._call("mutation", path, args)

    async def push_message(self, message: Message) -> None:
        await self.mutation("messages:pushFromGateway", {"instanceId": self.instance_id, **message.to_store()})

    async def mark_synced(self, message_ids: list[str]) -> None:
        await self.mutation("messages:markSynced", {"messageIds": list(message_ids)})

    async def get_unsynced_messages(self) -> list[OutboundMessage]:
        rows = await self.query("messages:getUnsyncedFromApp", {"instanceId": self.instance_id})
        messages = []
        for row in rows if isinstance(rows, list) else []:
            if not isinstance(row, dict):
                continue
            message_id = row.get("_id") or row.get("id")
            if not isinstance(message_id, str) or not message_id:
                logger.debug(f"跳过缺少 _id 的 App 消息: {str(row)[:120]}")
                continue
            messages.append(OutboundMessage(
                id=message_id,
                session_key=row.get("sessionKey") or "",
                content=row.get("content") if isinstance(row.get("content"), str) else "",
            ))
        return messages

    async def sync_sessions(self, sessions: list[Session]) -> None:
        await self.mutation("sessions:syncFromGateway", {
            "instanceId": self.instance_id,
            "sessions": [s.to_store() for s in sessions],
        })

    async def push_health(self, health_data: dict) -> None:
        await self.mutation("sessions:pushHealth", {"instanceId": self.instance_id, "healthData": health_data})

    async def heartbeat(self, version: Optional[str] = None) -> None:
        await self.mutation("sessions:heartbeat", {"instanceId": self.instance_id, "version": version})

    async def push_identity(self, identity: dict) -> None:
        await self.mutation("sessions:pushIdentity", {"instanceId": self.instance_id, "identity": identity})

    async def sync_skills(self, skills: list[dict]) -> None:
        await self.mutation("skills:sync", {"instanceId": self.instance_id, "skills": skills})

    async def sync_cron_jobs(self, jobs: list[dict]) -> None:
        await self.mutation("cronJobs:sync", {"instanceId": self.instance_id, "jobs": jobs})

    async def get_pending_cron_actions(self) -> list[CronAction]:
        rows = await self.query("cronJobs:getPendingActions", {"instanceId": self.instance_id})
        actions = []
        for row in rows if isinstance(rows, list) else []:
            if not isinstance(row, dict) or not row.get("_id"):
                continue
            actions.append(CronAction(
                id=str(row["_id"]),
                job_id=str(row.get("jobId") or ""),
                action=str(row.get("action") or ""),
            ))
        return actions

    async def complete_cron_action(self, action_id: str, status: str, error: Optional[str] = None) -> None:
        await self.mutation("cronJobs:completeAction", {"actionId": action_id, "status": status, "error": error})

    async def get_sessions_for_instance(self) -> list[str]:
        rows = await self.query("sessions:getForInstance", {"instanceId": self.instance_id})
        keys = []
        for row in rows if isinstance(rows, list) else []:
            key = row.get("sessionKey") if isinstance(row, dict) else None
            if isinstance(key, str) and key:
                keys.append(key)
        return keys
