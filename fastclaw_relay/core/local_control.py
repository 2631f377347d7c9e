"""
本地控制接口（LocalControl）及基于 openclaw 命令行的实现。

- list_skills / list_cron_jobs：执行 `openclaw skills list --json`、`openclaw cron list --json`，
  并把记录归一化为远端存储的字段。
- run_cron_action：enable / disable / run / remove 对应 `openclaw cron enable|disable|run|rm <id>`，
  失败统一抛 ActionExecutionError。
- read_identity：从 IDENTITY.md 中解析 **Name:** 与 **Emoji:**。
"""
import asyncio
import json
import os
import re
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional, Sequence

from fastclaw_relay.core.models import CRON_ACTIONS
from fastclaw_relay.utils.logger import logger

COMMAND_TIMEOUT = 15.0

# 操作名 -> openclaw cron 子命令
_CRON_SUBCOMMANDS = {
    "enable": "enable",
    "disable": "disable",
    "run": "run",
    "remove": "rm",
}

_NAME_RE = re.compile(r"\*\*Name:\*\*\s*(.+)")
_EMOJI_RE = re.compile(r"\*\*Emoji:\*\*\s*(\S+)")


class LocalControlError(Exception):
    """本地命令执行失败或输出无法解析。"""


class ActionExecutionError(LocalControlError):
    """定时任务操作执行失败；消息会截断后回写远端。"""


class LocalControl(ABC):
    """中继消费的本地控制操作。"""

    @abstractmethod
    async def list_skills(self) -> list[dict]:
        ...

    @abstractmethod
    async def list_cron_jobs(self) -> list[dict]:
        ...

    @abstractmethod
    async def run_cron_action(self, job_id: str, action: str) -> None:
        ...

    async def read_identity(self) -> Optional[dict]:
        """助手身份（name / emoji）；无可用信息时返回 None。"""
        return None


def normalize_skill(raw: Any) -> Optional[dict]:
    if not isinstance(raw, dict) or not raw.get("name"):
        return None
    return {
        "name": str(raw["name"]),
        "description": raw.get("description") or "",
        "emoji": raw.get("emoji"),
        "eligible": bool(raw.get("eligible", False)),
        "source": raw.get("source") or "unknown",
        "homepage": raw.get("homepage"),
    }


def _to_ms(value: Any) -> Optional[int]:
    """schedule.at 可能是毫秒数或 ISO 时间字符串。"""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return int(datetime.fromisoformat(text).timestamp() * 1000)
        except ValueError:
            return None
    return None


def normalize_cron_job(raw: Any) -> Optional[dict]:
    """openclaw cron 任务记录 -> 远端 cronJobs 的扁平结构。"""
    if not isinstance(raw, dict) or not raw.get("id"):
        return None
    schedule = raw.get("schedule") if isinstance(raw.get("schedule"), dict) else {}
    payload = raw.get("payload") if isinstance(raw.get("payload"), dict) else {}
    state = raw.get("state") if isinstance(raw.get("state"), dict) else {}
    delivery = raw.get("delivery") if isinstance(raw.get("delivery"), dict) else {}
    payload_text = payload.get("text")
    if payload_text is None:
        payload_text = payload.get("message")
    return {
        "id": str(raw["id"]),
        "name": raw.get("name"),
        "enabled": bool(raw.get("enabled", False)),
        "scheduleKind": schedule.get("kind") or "unknown",
        "scheduleExpr": schedule.get("expr"),
        "scheduleTz": schedule.get("tz"),
        "scheduleAt": _to_ms(schedule.get("at")),
        "scheduleEveryMs": schedule.get("everyMs"),
        "sessionTarget": raw.get("sessionTarget") or "main",
        "payloadKind": payload.get("kind") or "unknown",
        "payloadText": payload_text or "",
        "lastRunAt": state.get("lastRunAtMs"),
        "lastStatus": state.get("lastStatus"),
        "lastError": state.get("lastError"),
        "lastDurationMs": state.get("lastDurationMs"),
        "nextRunAt": state.get("nextRunAtMs"),
        "deliveryMode": delivery.get("mode"),
    }


def parse_identity(text: str) -> Optional[dict]:
    """解析 IDENTITY.md；名称末尾的括号注释会被去掉。"""
    identity = {}
    name_match = _NAME_RE.search(text or "")
    emoji_match = _EMOJI_RE.search(text or "")
    if name_match:
        name = re.sub(r"\s*\(.*\)$", "", name_match.group(1).strip())
        if name:
            identity["name"] = name
    if emoji_match:
        identity["emoji"] = emoji_match.group(1).strip()
    return identity or None


class OpenClawCli(LocalControl):
    """通过 openclaw 命令行实现 LocalControl。"""

    def __init__(self, binary: str = "openclaw", identity_paths: Sequence[str] = (), timeout: float = COMMAND_TIMEOUT):
        self.binary = binary
        self.identity_paths = list(identity_paths)
        self.timeout = timeout

    async def _run(self, *args: str) -> str:
        """执行 openclaw 子命令并返回 stdout；超时、非零退出码或启动失败抛 LocalControlError。"""
        cmd = " ".join((self.binary,) + args)
        try:
            proc = await asyncio.create_subprocess_exec(
                self.binary, *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise LocalControlError(f"无法执行 {cmd}: {e}") from e
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise LocalControlError(f"{cmd} 超时（{self.timeout:g}s）") from None
        if proc.returncode != 0:
            detail = (stderr or stdout or b"").decode("utf-8", errors="replace").strip()
            raise LocalControlError(f"{cmd} 退出码 {proc.returncode}: {detail[:200]}")
        return stdout.decode("utf-8", errors="replace")

    async def _run_json(self, *args: str) -> dict:
        raw = await self._run(*args)
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise LocalControlError(f"{self.binary} {' '.join(args)} 输出不是 JSON: {e}") from e
        return data if isinstance(data, dict) else {}

    async def list_skills(self) -> list[dict]:
        data = await self._run_json("skills", "list", "--json")
        skills = []
        for raw in data.get("skills") or []:
            skill = normalize_skill(raw)
            if skill is not None:
                skills.append(skill)
        return skills

    async def list_cron_jobs(self) -> list[dict]:
        data = await self._run_json("cron", "list", "--json")
        jobs = []
        for raw in data.get("jobs") or []:
            job = normalize_cron_job(raw)
            if job is not None:
                jobs.append(job)
        return jobs

    async def run_cron_action(self, job_id: str, action: str) -> None:
        if action not in CRON_ACTIONS:
            raise ActionExecutionError(f"Unknown cron action: {action}")
        if not job_id:
            raise ActionExecutionError(f"cron {action} 需要非空 jobId")
        try:
            await self._run("cron", _CRON_SUBCOMMANDS[action], job_id)
        except LocalControlError as e:
            raise ActionExecutionError(str(e)) from e
        logger.info(f"cron {action} {job_id} 已执行")

    async def read_identity(self) -> Optional[dict]:
        for path in self.identity_paths:
            path = os.path.expanduser(path)
            if not os.path.isfile(path):
                continue
            try:
                with open(path, "r", encoding="utf-8") as f:
                    content = f.read()
            except OSError as e:
                logger.debug(f"读取 {path} 失败: {e}")
                continue
            return parse_identity(content)
        return None
