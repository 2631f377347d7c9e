"""
全局配置管理：
- 配置文件默认位于 ~/.openclaw/fastclaw/config.json（可用 FASTCLAW_CONFIG 覆盖）
- convexUrl / instanceId 必填；gatewayToken 可加密存储（enc: 前缀），缺省时读 OPENCLAW_GATEWAY_TOKEN
- 配置错误是唯一会让进程退出的错误，须在 Relay 启动前由 validate() 暴露
"""
import json
import os

from fastclaw_relay.config.secret_cipher import decrypt_if_encrypted, encrypt_value
from fastclaw_relay.utils.logger import logger
from fastclaw_relay.utils.platform_adapter import get_device_name

DEFAULT_CONFIG_PATH = os.path.join("~", ".openclaw", "fastclaw", "config.json")
DEFAULT_GATEWAY_URL = "ws://127.0.0.1:18789"
TOKEN_ENV = "OPENCLAW_GATEWAY_TOKEN"
CONFIG_ENV = "FASTCLAW_CONFIG"

# 存于 config.json 的键
CONFIG_KEYS = (
    "convexUrl", "instanceId", "instanceName",
    "gatewayUrl", "gatewayToken",
    "logLevel", "logDir",
    "openclawBin", "identityPaths",
)
# 上述键中需加密存储的
SENSITIVE_KEYS = ("gatewayToken",)
REQUIRED_KEYS = ("convexUrl", "instanceId", "gatewayToken")


class ConfigError(Exception):
    """配置缺失或无法解析。"""


class Settings:
    """全局配置：默认值 -> config.json -> 环境变量。"""

    def __init__(self, config_file=None):
        if config_file is None:
            config_file = os.environ.get(CONFIG_ENV) or DEFAULT_CONFIG_PATH
        self.config_file = os.path.normpath(os.path.abspath(os.path.expanduser(config_file)))
        self._config_dir = os.path.dirname(self.config_file)
        self.config = self._load_default()
        self.load()

    def _load_default(self):
        home = os.path.expanduser("~")
        return {
            "convexUrl": "",
            "instanceId": "",
            "instanceName": get_device_name(),
            "gatewayUrl": DEFAULT_GATEWAY_URL,
            "gatewayToken": "",
            "logLevel": "INFO",
            "logDir": os.path.join(home, ".openclaw", "fastclaw", "logs"),
            "openclawBin": "openclaw",
            "identityPaths": [
                os.path.join(home, "clawd", "IDENTITY.md"),
                os.path.join(home, ".openclaw", "workspace", "IDENTITY.md"),
            ],
        }

    def load(self):
        """加载：默认 -> config.json -> 环境变量。返回是否读到了配置文件。"""
        self.config = self._load_default()
        loaded = False
        if os.path.isfile(self.config_file):
            try:
                with open(self.config_file, "r", encoding="utf-8") as f:
                    data = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                raise ConfigError(f"读取配置 {self.config_file} 失败: {e}") from e
            if not isinstance(data, dict):
                raise ConfigError(f"配置 {self.config_file} 顶层须为 JSON 对象")
            for k in CONFIG_KEYS:
                if k not in data or data[k] is None:
                    continue
                raw = data[k]
                if k in SENSITIVE_KEYS and isinstance(raw, str):
                    try:
                        raw = decrypt_if_encrypted(raw, self._config_dir)
                    except ValueError as e:
                        raise ConfigError(f"解密 {k} 失败: {e}") from e
                self.config[k] = raw
            loaded = True
        else:
            logger.debug(f"配置文件不存在: {self.config_file}")
        if not self.config.get("gatewayToken"):
            self.config["gatewayToken"] = os.environ.get(TOKEN_ENV, "")
        return loaded

    def validate(self):
        """校验必填项，缺失时抛出 ConfigError（一次列出全部缺失项）。"""
        missing = [k for k in REQUIRED_KEYS if not str(self.config.get(k) or "").strip()]
        if missing:
            hint = f"；gatewayToken 也可通过环境变量 {TOKEN_ENV} 提供" if "gatewayToken" in missing else ""
            raise ConfigError(f"{self.config_file} 缺少配置: {', '.join(missing)}{hint}")
        return self

    def save(self):
        """保存到 config.json；敏感项加密写入。"""
        os.makedirs(self._config_dir, exist_ok=True)
        data = {}
        for k in CONFIG_KEYS:
            if k not in self.config:
                continue
            v = self.config[k]
            if k in SENSITIVE_KEYS and isinstance(v, str) and v:
                data[k] = encrypt_value(v, self._config_dir)
            else:
                data[k] = v
        try:
            with open(self.config_file, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
        except OSError as e:
            logger.error(f"保存配置 {self.config_file} 失败: {e}")
            raise

    def get(self, key, default=None):
        return self.config.get(key, default)

    def set(self, key, value):
        self.config[key] = value
