"""
日志工具模块
提供统一的日志格式化和管理。

注意：本模块的 Logger 仅接受单参数字符串（与标准库 logging 多参数形式不同）。
请统一使用 f-string 传参，例如：logger.info(f"msg: {x}")，
不要使用 logger.info("msg %s", x) 或 logger.info("msg", x)。
"""
import logging
import sys
from datetime import datetime
from pathlib import Path

_ROOT_NAME = "FastClawRelay"
_GATEWAY_NAME = "FastClawRelay.Gateway"

_FORMATTER = logging.Formatter(
    '[%(asctime)s] [%(levelname)-8s] [%(name)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)


class Logger:
    """日志管理器"""

    _instance = None
    _logger = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super(Logger, cls).__new__(cls)
        return cls._instance

    def __init__(self):
        if self._logger is None:
            self._setup_logger()

    def _setup_logger(self):
        """设置日志器：主 logger 与 Gateway 子 logger 共用控制台处理器；文件日志由 enable_file_logs 开启。"""
        self._logger = logging.getLogger(_ROOT_NAME)
        self._logger.setLevel(logging.INFO)

        # 避免重复添加处理器
        if self._logger.handlers:
            return

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(logging.DEBUG)
        console_handler.setFormatter(_FORMATTER)
        self._logger.addHandler(console_handler)

        _gateway_logger = logging.getLogger(_GATEWAY_NAME)
        _gateway_logger.setLevel(logging.INFO)
        if not _gateway_logger.handlers:
            _gateway_logger.addHandler(console_handler)
        # Gateway 日志单独成文件，不向主 logger 传播避免重复
        _gateway_logger.propagate = False

    def enable_file_logs(self, log_dir):
        """
        开启按天滚动的文件日志：relay_YYYYMMDD.log（主日志）与 gateway.YYYYMMDD.log（协议收发）。
        重复调用不会重复添加处理器。
        """
        path = Path(log_dir).expanduser()
        path.mkdir(parents=True, exist_ok=True)
        day = datetime.now().strftime('%Y%m%d')
        pairs = (
            (self._logger, path / f"relay_{day}.log"),
            (logging.getLogger(_GATEWAY_NAME), path / f"gateway.{day}.log"),
        )
        for target, log_file in pairs:
            if any(isinstance(h, logging.FileHandler) for h in target.handlers):
                continue
            file_handler = logging.FileHandler(log_file, encoding='utf-8')
            file_handler.setLevel(target.level)
            file_handler.setFormatter(_FORMATTER)
            target.addHandler(file_handler)

    def set_level(self, level_name: str):
        """根据配置 logLevel 设置主 logger 与各 handler 等级。level_name: DEBUG/INFO/WARNING/ERROR。"""
        level_map = {
            "DEBUG": logging.DEBUG,
            "INFO": logging.INFO,
            "WARNING": logging.WARNING,
            "ERROR": logging.ERROR,
        }
        level = level_map.get((level_name or "").strip().upper(), logging.INFO)
        self._logger.setLevel(level)
        for h in self._logger.handlers:
            h.setLevel(level)
        # Gateway 子 logger 同步
        gw = logging.getLogger(_GATEWAY_NAME)
        gw.setLevel(level)
        for h in gw.handlers:
            h.setLevel(level)

    def debug(self, message):
        """调试日志。message 须为单参字符串，建议使用 f-string。"""
        self._logger.debug(message)

    def info(self, message):
        """信息日志。message 须为单参字符串，建议使用 f-string。"""
        self._logger.info(message)

    def warning(self, message):
        """警告日志。message 须为单参字符串，建议使用 f-string。"""
        self._logger.warning(message)

    def error(self, message):
        """错误日志。message 须为单参字符串，建议使用 f-string。"""
        self._logger.error(message)

    def critical(self, message):
        """严重错误日志。message 须为单参字符串，建议使用 f-string。"""
        self._logger.critical(message)

    def exception(self, message):
        """异常日志（带堆栈）。message 须为单参字符串，建议使用 f-string。"""
        self._logger.exception(message)


# 全局日志实例
logger = Logger()
# Gateway 专用 logger：协议收发、握手、RPC 关联
gateway_logger = logging.getLogger(_GATEWAY_NAME)
