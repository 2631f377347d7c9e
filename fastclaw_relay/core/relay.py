"""
FastClaw 中继：OpenClaw Gateway <-> 远端存储的双向同步。

- start() 为重连主循环：每轮新建 GatewayConnection，握手成功后运行一次「连接会话」，
  断开后按指数退避（封顶 30 秒，外加 0~0.5 秒抖动）重连，直到 stop()。
- 连接会话内先做一次全量初始同步，同时启动各周期任务；所有任务归属本次连接，
  连接关闭时统一取消。单个任务失败只记日志，下个周期重试。
- 实时 chat 回复的推送不归属连接：断线不取消，stop() 后 start() 退出前最多等待 PUSH_DRAIN_TIMEOUT 秒。
- Gateway -> 远端的消息一律经过 push_messages：先清理过期去重记录，再逐条去重后推送。
- 远端 -> Gateway 的 App 消息用自身 id 作为 chat.send 幂等键，成功后才标记已同步。
"""
import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from fastclaw_relay.core.local_control import ActionExecutionError, LocalControl
from fastclaw_relay.core.models import Message, OutboundMessage
from fastclaw_relay.core.openclaw_gateway import local_to_server as lts
from fastclaw_relay.core.openclaw_gateway import server_to_local as stl
from fastclaw_relay.core.openclaw_gateway.client import GatewayConnection
from fastclaw_relay.core.openclaw_gateway.errors import ConnectError, GatewayError
from fastclaw_relay.core.openclaw_gateway.gateway_memory import MessageDeduplicator, RunAccumulator
from fastclaw_relay.core.openclaw_gateway.protocol import EVENT_CHAT, EVENT_SESSIONS_UPDATED, EventFrame
from fastclaw_relay.core.remote_store import RemoteStore
from fastclaw_relay.utils.logger import logger

# stop() 后等待进行中的远端推送的最长时间（秒）
PUSH_DRAIN_TIMEOUT = 5.0


class SyncTaskError(Exception):
    """同步任务中外部调用失败；只记日志，任务下个周期重试。"""

    def __init__(self, task: str, cause: BaseException):
        super().__init__(f"{task} 失败: {cause}")
        self.task = task
        self.cause = cause


@dataclass
class RelayTimings:
    """周期任务间隔与重连退避参数（秒）。"""
    heartbeat: float = 30.0
    session_sync: float = 15.0
    health_sync: float = 60.0
    cron_actions: float = 5.0
    app_poll: float = 2.0
    backoff_base: float = 1.0
    backoff_cap: float = 30.0
    backoff_jitter: float = 0.5


def backoff_delay(attempt: int, base: float = 1.0, cap: float = 30.0, jitter: float = 0.0) -> float:
    """第 attempt 次重连前的等待：min(cap, base * 2^min(attempt, 5)) + jitter。"""
    return min(cap, base * 2 ** min(attempt, 5)) + jitter


class SessionTasks:
    """一次连接期间的任务集合；cancel_all 之后不再接受新任务。"""

    def __init__(self):
        self._tasks: set = set()
        self._closed = False

    def __len__(self):
        return len(self._tasks)

    def spawn(self, coro: Awaitable) -> Optional[asyncio.Task]:
        if self._closed:
            coro.close()
            return None
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def cancel_all(self) -> None:
        self._closed = True
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


class Relay:
    """
    中继编排器。
    connection_factory() 每次返回一个新的、未打开的 GatewayConnection。
    """

    def __init__(
        self,
        store: RemoteStore,
        control: LocalControl,
        connection_factory: Callable[[], GatewayConnection],
        *,
        timings: Optional[RelayTimings] = None,
        dedup: Optional[MessageDeduplicator] = None,
        rng: Callable[[], float] = random.random,
    ):
        self.store = store
        self.control = control
        self._connection_factory = connection_factory
        self.timings = timings or RelayTimings()
        self._rng = rng
        self.running = True
        self.reconnect_attempt = 0
        self.connection: Optional[GatewayConnection] = None
        self.accumulator = RunAccumulator()
        self.dedup = dedup or MessageDeduplicator()
        self._stop_event = asyncio.Event()
        self._forward_lock = asyncio.Lock()
        # 推送远端的任务不随连接取消，stop 后由 start 收尾
        self._push_tasks: set = set()

    async def start(self) -> None:
        """重连主循环，直到 stop()；退出前等待未完成的消息推送。"""
        logger.info("fastclaw relay 启动")
        while self.running:
            conn = None
            try:
                conn = self._connection_factory()
                self.connection = conn
                await conn.open()
                self.reconnect_attempt = 0
                logger.info(f"已连接 Gateway: {conn.url}（server.version={conn.server_version}）")
                await self._run_connected(conn)
            except ConnectError as e:
                if self.running:
                    logger.warning(f"Gateway 连接失败: {e}")
            except Exception as e:
                logger.exception(f"连接会话异常结束: {e}")
            finally:
                if conn is not None:
                    await conn.close()
                self.connection = None
            if not self.running:
                break
            self.reconnect_attempt += 1
            delay = self.next_backoff_delay()
            logger.info(f"{delay:.2f} 秒后重连（第 {self.reconnect_attempt} 次）")
            await self._wait_or_stop(delay)
        await self._drain_pushes()
        logger.info("fastclaw relay 已停止")

    def next_backoff_delay(self) -> float:
        """按当前 reconnect_attempt 计算下一次重连等待，含 0 ~ backoff_jitter 秒随机抖动。"""
        t = self.timings
        return backoff_delay(
            self.reconnect_attempt,
            base=t.backoff_base,
            cap=t.backoff_cap,
            jitter=self._rng() * t.backoff_jitter,
        )

    async def _drain_pushes(self) -> None:
        """等待进行中的消息推送，超过 PUSH_DRAIN_TIMEOUT 的取消（去重记录随之撤销）。"""
        pending = list(self._push_tasks)
        if not pending:
            return
        logger.info(f"等待 {len(pending)} 个未完成的消息推送")
        _, not_done = await asyncio.wait(pending, timeout=PUSH_DRAIN_TIMEOUT)
        for task in not_done:
            task.cancel()
        if not_done:
            await asyncio.gather(*not_done, return_exceptions=True)

    async def stop(self) -> None:
        """停止主循环并关闭当前连接；未完成的请求以 GatewayClosingError 失败。"""
        self.running = False
        self._stop_event.set()
        conn = self.connection
        if conn is not None:
            await conn.close()

    async def _wait_or_stop(self, delay: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def _run_connected(self, conn: GatewayConnection) -> None:
        tasks = SessionTasks()
        off = conn.on_event(lambda event: self._on_gateway_event(conn, tasks, event))
        t = self.timings
        try:
            tasks.spawn(self._initial_sync(conn))
            tasks.spawn(self._every("heartbeat", t.heartbeat, self.send_heartbeat))
            tasks.spawn(self._every("session sync", t.session_sync, lambda: self.sync_sessions(conn)))
            tasks.spawn(self._every("health sync", t.health_sync, lambda: self._sync_health_and_cron(conn)))
            tasks.spawn(self._every("cron actions", t.cron_actions, self.process_cron_actions))
            tasks.spawn(self._every("app forward", t.app_poll, lambda: self.forward_app_messages(conn)))
            await conn.wait_for_close()
        finally:
            off()
            await tasks.cancel_all()
            logger.info("连接会话结束，周期任务已全部取消")

    async def _guarded(self, name: str, fn: Callable[[], Awaitable]) -> None:
        try:
            await fn()
        except Exception as e:
            if self.running:
                logger.warning(str(SyncTaskError(name, e)))

    async def _every(self, name: str, interval: float, fn: Callable[[], Awaitable]) -> None:
        while True:
            await asyncio.sleep(interval)
            await self._guarded(name, fn)

    async def _initial_sync(self, conn: GatewayConnection) -> None:
        steps = (
            ("heartbeat", self.send_heartbeat),
            ("session sync", lambda: self.sync_sessions(conn)),
            ("health sync", lambda: self.sync_health(conn)),
            ("identity sync", self.sync_identity),
            ("skills sync", self.sync_skills),
            ("cron jobs sync", self.sync_cron_jobs),
            ("history backfill", lambda: self.sync_history(conn)),
            ("app forward", lambda: self.forward_app_messages(conn)),
        )
        for name, fn in steps:
            await self._guarded(name, fn)
        logger.info("初始同步完成，进入周期同步")

    def _on_gateway_event(self, conn: GatewayConnection, tasks: SessionTasks, event: EventFrame) -> None:
        if event.name == EVENT_CHAT:
            self._on_chat_event(event.payload)
        elif event.name == EVENT_SESSIONS_UPDATED:
            tasks.spawn(self._guarded("session sync", lambda: self.sync_sessions(conn)))

    def _on_chat_event(self, payload) -> None:
        chat = stl.parse_chat_event(payload)
        if chat is None:
            return
        message = chat.message or {}
        if chat.state == stl.CHAT_STATE_DELTA:
            if chat.message:
                self.accumulator.on_delta(
                    chat.run_id,
                    chat.session_key,
                    message.get("content"),
                    stl.to_timestamp(message.get("timestamp")),
                )
        elif chat.state == stl.CHAT_STATE_FINAL:
            ts = message.get("timestamp")
            finished = self.accumulator.on_final(
                chat.run_id,
                message.get("content") if chat.message else None,
                session_key=chat.session_key,
                timestamp=stl.to_timestamp(ts) if ts is not None else None,
            )
            if finished is not None:
                self._spawn_push([finished])
        elif chat.state == stl.CHAT_STATE_ERROR:
            self.accumulator.discard(chat.run_id)
            logger.warning(f"Gateway run 出错: runId={chat.run_id} sessionKey={chat.session_key}")

    def _spawn_push(self, messages: list[Message]) -> asyncio.Task:
        task = asyncio.ensure_future(self._guarded("chat push", lambda: self.push_messages(messages)))
        self._push_tasks.add(task)
        task.add_done_callback(self._push_tasks.discard)
        return task

    async def push_messages(self, messages: list[Message]) -> int:
        """
        去重后逐条推送到远端，返回实际推送条数。
        未送达（失败或被取消）的消息撤销去重记录，下次同步可重试。
        """
        if not messages:
            return 0
        self.dedup.prune()
        pushed = 0
        for msg in messages:
            if not self.dedup.should_push(msg):
                continue
            delivered = False
            try:
                await self.store.push_message(msg)
                delivered = True
            except Exception as e:
                if self.running:
                    logger.warning(f"推送 {msg.role} 消息失败 sessionKey={msg.session_key}: {e}")
                continue
            finally:
                if not delivered:
                    self.dedup.forget(msg)
            pushed += 1
            logger.debug(f"已推送 {msg.role} 消息 sessionKey={msg.session_key}")
        return pushed

    async def send_heartbeat(self) -> None:
        await self.store.heartbeat()

    async def sync_sessions(self, conn: GatewayConnection) -> None:
        payload = await lts.fetch_sessions_list(conn)
        sessions = stl.extract_sessions(payload)
        if not sessions:
            return
        await self.store.sync_sessions(sessions)
        logger.debug(f"已同步 {len(sessions)} 个会话")

    async def sync_health(self, conn: GatewayConnection) -> None:
        health, status = await lts.fetch_health_and_status(conn)
        await self.store.push_health(stl.build_health_data(health, status))
        await self.store.heartbeat(stl.resolve_server_version(conn.server_version, health))

    async def _sync_health_and_cron(self, conn: GatewayConnection) -> None:
        await self._guarded("health sync", lambda: self.sync_health(conn))
        await self.sync_cron_jobs()

    async def sync_identity(self) -> None:
        identity = await self.control.read_identity()
        if not identity:
            return
        await self.store.push_identity(identity)

    async def sync_skills(self) -> None:
        skills = await self.control.list_skills()
        await self.store.sync_skills(skills)

    async def sync_cron_jobs(self) -> None:
        jobs = await self.control.list_cron_jobs()
        await self.store.sync_cron_jobs(jobs)

    async def process_cron_actions(self) -> None:
        """执行 App 发起的定时任务操作并回写结果；单个操作失败不影响后续操作。"""
        actions = await self.store.get_pending_cron_actions()
        if not actions:
            return
        for action in actions:
            try:
                await self.control.run_cron_action(action.job_id, action.action)
            except ActionExecutionError as e:
                logger.warning(f"cron {action.action} {action.job_id} 失败: {e}")
                await self.store.complete_cron_action(action.id, "error", str(e)[:200])
            else:
                await self.store.complete_cron_action(action.id, "done")
        # 操作后刷新远端的任务状态
        await self.sync_cron_jobs()

    async def sync_history(self, conn: GatewayConnection) -> None:
        """回填远端已知会话的最近历史；单个会话失败不影响其他会话。"""
        session_keys = await self.store.get_sessions_for_instance()
        for key in session_keys:
            if not conn.is_open():
                break
            try:
                payload = await lts.fetch_chat_history(conn, key)
            except GatewayError as e:
                logger.info(f"拉取历史失败 sessionKey={key}: {e}")
                continue
            messages = stl.extract_history_messages(key, payload)
            if messages:
                pushed = await self.push_messages(messages)
                logger.info(f"历史回填 sessionKey={key}: {len(messages)} 条，新推送 {pushed} 条")

    async def forward_app_messages(self, conn: GatewayConnection) -> None:
        """把 App 端未同步的消息转发给 Gateway；成功的批量标记为已同步，失败的留待下轮。"""
        if self._forward_lock.locked():
            return
        async with self._forward_lock:
            unsynced = await self.store.get_unsynced_messages()
            if not unsynced:
                return
            logger.info(f"发现 {len(unsynced)} 条待转发的 App 消息")
            synced_ids = []
            for message in unsynced:
                if await self._send_to_gateway(conn, message):
                    synced_ids.append(message.id)
            if synced_ids:
                await self.store.mark_synced(synced_ids)

    async def _send_to_gateway(self, conn: GatewayConnection, message: OutboundMessage) -> bool:
        if not message.session_key or not message.content:
            return False
        try:
            response = await lts.send_chat(conn, message.session_key, message.content, idempotency_key=message.id)
        except GatewayError as e:
            logger.warning(f"转发到 Gateway 失败 sessionKey={message.session_key} id={message.id}: {e}")
            return False
        await self.push_messages(stl.extract_gateway_messages(response, session_key=message.session_key))
        return True
