"""Shared fixtures for the FastClaw Relay test suite.

The Gateway transport, remote store and local control are all in-memory fakes.
Nothing touches ~/.openclaw/, a running Gateway or a Convex deployment.
"""

import asyncio
import json
import sys
from pathlib import Path

import pytest

# Add project root to path so imports work
_root = Path(__file__).parent.parent
sys.path.insert(0, str(_root))

from fastclaw_relay.core.local_control import ActionExecutionError, LocalControl  # noqa: E402
from fastclaw_relay.core.openclaw_gateway.client import GatewayConnection  # noqa: E402
from fastclaw_relay.core.relay import RelayTimings  # noqa: E402
from fastclaw_relay.core.remote_store import RemoteStore, RemoteStoreError  # noqa: E402

_CLOSED = object()


def ok_response(frame, payload):
    return {"type": "res", "id": frame["id"], "ok": True, "payload": payload}


def error_response(frame, message):
    return {"type": "res", "id": frame["id"], "ok": False, "error": {"message": message}}


class FakeWebSocket:
    """In-memory stand-in for a websockets client connection.

    connect is answered with hello-ok unless auto_hello is False. Other
    requests go to `routes`: method -> payload, or method -> callable(frame)
    returning a full response frame (or None to leave the request pending).
    Methods without a route are answered with an empty payload, except those
    listed in `silent`, which are never answered. When `send_gate` (an
    asyncio.Event) is given, sends other than connect block until it is set.
    """

    def __init__(self, routes=None, *, auto_hello=True, hello=None, challenge=False, silent=(), send_gate=None):
        self.routes = dict(routes or {})
        self.send_gate = send_gate
        self.auto_hello = auto_hello
        self.hello = hello or {"type": "hello-ok", "server": {"version": "2026.2.1"}}
        self.silent = set(silent)
        self.sent = []
        self.closed = False
        self._inbox = asyncio.Queue()
        if challenge:
            self.push({"type": "event", "event": "connect.challenge", "payload": {"nonce": "n-1"}})

    def frames(self, method):
        return [f for f in self.sent if f.get("method") == method]

    def push(self, frame):
        self._inbox.put_nowait(frame if isinstance(frame, (str, bytes)) else json.dumps(frame))

    def drop(self):
        """Simulate the peer going away."""
        self._inbox.put_nowait(_CLOSED)

    async def send(self, text):
        if self.closed:
            raise ConnectionError("socket closed")
        frame = json.loads(text)
        method = frame.get("method")
        if self.send_gate is not None and method != "connect":
            await self.send_gate.wait()
        self.sent.append(frame)
        if method == "connect":
            if self.auto_hello:
                self.push(ok_response(frame, self.hello))
            return
        if method in self.silent:
            return
        route = self.routes.get(method, {})
        reply = route(frame) if callable(route) else ok_response(frame, route)
        if reply is not None:
            self.push(reply)

    async def recv(self):
        item = await self._inbox.get()
        if item is _CLOSED:
            raise ConnectionError("connection closed by peer")
        return item

    async def close(self, code=1000, reason=""):
        self.closed = True
        self._inbox.put_nowait(_CLOSED)


def connect_factory_for(ws):
    async def connect(url, **kwargs):
        if isinstance(ws, BaseException):
            raise ws
        return ws
    return connect


class FakeRemoteStore(RemoteStore):
    """Records every call; unsynced messages and pending actions are served from lists.

    push_gate (an asyncio.Event) holds push_message until set. fail_pushes and
    fail_heartbeats make the next N calls raise RemoteStoreError.
    """

    def __init__(self):
        self.pushed = []
        self.marked = []
        self.unsynced = []
        self.session_syncs = []
        self.health = []
        self.heartbeats = []
        self.identities = []
        self.skill_syncs = []
        self.cron_syncs = []
        self.pending_actions = []
        self.completed = []
        self.session_keys = []
        self.fail_pushes = 0
        self.fail_heartbeats = 0
        self.push_gate = None
        self.closed = False

    async def push_message(self, message):
        if self.push_gate is not None:
            await self.push_gate.wait()
        if self.fail_pushes:
            self.fail_pushes -= 1
            raise RemoteStoreError("messages:pushFromGateway: unavailable")
        self.pushed.append(message)

    async def mark_synced(self, message_ids):
        self.marked.append(list(message_ids))
        self.unsynced = [m for m in self.unsynced if m.id not in message_ids]

    async def get_unsynced_messages(self):
        return list(self.unsynced)

    async def sync_sessions(self, sessions):
        self.session_syncs.append(list(sessions))

    async def push_health(self, health_data):
        self.health.append(health_data)

    async def heartbeat(self, version=None):
        if self.fail_heartbeats:
            self.fail_heartbeats -= 1
            raise RemoteStoreError("instances:heartbeat: unavailable")
        self.heartbeats.append(version)

    async def push_identity(self, identity):
        self.identities.append(identity)

    async def sync_skills(self, skills):
        self.skill_syncs.append(list(skills))

    async def sync_cron_jobs(self, jobs):
        self.cron_syncs.append(list(jobs))

    async def get_pending_cron_actions(self):
        actions, self.pending_actions = self.pending_actions, []
        return actions

    async def complete_cron_action(self, action_id, status, error=None):
        self.completed.append((action_id, status, error))

    async def get_sessions_for_instance(self):
        return list(self.session_keys)

    async def close(self):
        self.closed = True


class FakeLocalControl(LocalControl):
    def __init__(self):
        self.skills = [{"name": "weather", "description": "", "eligible": True, "source": "bundled"}]
        self.jobs = [{"id": "j1", "enabled": True, "scheduleKind": "cron"}]
        self.identity = {"name": "Claw", "emoji": "🦞"}
        self.failing_jobs = {}
        self.skills_error = None
        self.actions = []

    async def list_skills(self):
        if self.skills_error is not None:
            raise self.skills_error
        return list(self.skills)

    async def list_cron_jobs(self):
        return list(self.jobs)

    async def run_cron_action(self, job_id, action):
        self.actions.append((job_id, action))
        if job_id in self.failing_jobs:
            raise ActionExecutionError(self.failing_jobs[job_id])

    async def read_identity(self):
        return self.identity


class FakeConnection:
    """Minimal stand-in for GatewayConnection when only request() matters."""

    def __init__(self, routes=None, server_version="2026.2.1"):
        self.routes = dict(routes or {})
        self.requests = []
        self.server_version = server_version
        self.open = True

    def is_open(self):
        return self.open

    async def request(self, method, params=None, timeout=10.0):
        self.requests.append((method, params))
        route = self.routes.get(method, {})
        if isinstance(route, BaseException):
            raise route
        return route(params) if callable(route) else route


@pytest.fixture
def make_connection():
    """Build a GatewayConnection wired to the given fake socket."""
    def _make(ws, **kwargs):
        return GatewayConnection("ws://gateway.test", "tok-1", connect_factory=connect_factory_for(ws), **kwargs)
    return _make


@pytest.fixture
def store():
    return FakeRemoteStore()


@pytest.fixture
def control():
    return FakeLocalControl()


@pytest.fixture
def quiet_timings():
    """Periodic intervals long enough that only the initial pass runs during a test."""
    return RelayTimings(
        heartbeat=3600, session_sync=3600, health_sync=3600,
        cron_actions=3600, app_poll=3600,
        backoff_base=0.01, backoff_cap=0.05, backoff_jitter=0.0,
    )


@pytest.fixture
def wait_until():
    async def _wait(predicate, timeout=2.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.01)
    return _wait
