"""
FastClaw Relay 主程序 - 本地 OpenClaw Gateway 与远端 Convex 存储之间的后台中继
"""
import asyncio
import signal
import sys

from fastclaw_relay import __version__
from fastclaw_relay.config.settings import ConfigError, Settings
from fastclaw_relay.core.local_control import OpenClawCli
from fastclaw_relay.core.openclaw_gateway.client import GatewayConnection
from fastclaw_relay.core.relay import Relay
from fastclaw_relay.core.remote_store import ConvexRemoteStore
from fastclaw_relay.utils.logger import logger
from fastclaw_relay.utils.platform_adapter import platform_name


def build_relay(settings: Settings) -> Relay:
    """按配置组装 Relay：Convex 远端存储、openclaw 命令行、Gateway 连接工厂。"""
    store = ConvexRemoteStore(settings.get("convexUrl"), settings.get("instanceId"))
    control = OpenClawCli(
        binary=settings.get("openclawBin") or "openclaw",
        identity_paths=settings.get("identityPaths") or (),
    )
    gateway_url = settings.get("gatewayUrl")
    gateway_token = settings.get("gatewayToken")

    def connection_factory() -> GatewayConnection:
        return GatewayConnection(gateway_url, gateway_token, client_version=__version__)

    return Relay(store, control, connection_factory)


def _setup_signals(loop: asyncio.AbstractEventLoop, relay: Relay) -> set:
    """SIGINT / SIGTERM 触发 relay.stop()；返回持有 stop 任务引用的集合。"""
    stopping: set = set()

    def handle_stop():
        logger.info(f"收到退出信号，正在停止中继...")
        task = loop.create_task(relay.stop())
        stopping.add(task)
        task.add_done_callback(stopping.discard)

    try:
        loop.add_signal_handler(signal.SIGTERM, handle_stop)
        loop.add_signal_handler(signal.SIGINT, handle_stop)
    except NotImplementedError:
        # Windows 不支持 add_signal_handler，依赖 KeyboardInterrupt
        pass
    return stopping


async def run(settings: Settings) -> None:
    relay = build_relay(settings)
    _setup_signals(asyncio.get_running_loop(), relay)
    try:
        await relay.start()
    finally:
        await relay.store.close()


def main():
    """主函数：加载配置后运行中继直到收到退出信号。配置错误时以非零码退出。"""
    logger.info(f"{'=' * 50}")
    logger.info(f"FastClaw Relay {__version__} 启动")
    logger.info(f"当前平台: {platform_name()}")
    logger.info(f"{'=' * 50}")

    try:
        settings = Settings().validate()
    except ConfigError as e:
        logger.error(f"配置错误: {e}")
        sys.exit(1)

    logger.set_level(settings.get("logLevel", "INFO"))
    log_dir = settings.get("logDir")
    if log_dir:
        try:
            logger.enable_file_logs(log_dir)
        except OSError as e:
            logger.warning(f"无法写入日志目录 {log_dir}: {e}，仅输出到控制台")
    logger.info(f"实例: {settings.get('instanceName')} ({settings.get('instanceId')})")
    logger.info(f"Gateway: {settings.get('gatewayUrl')}  Convex: {settings.get('convexUrl')}")

    try:
        asyncio.run(run(settings))
    except KeyboardInterrupt:
        logger.info(f"用户中断程序")
    except Exception as e:
        logger.exception(f"程序运行出错: {e}")
        sys.exit(1)
    finally:
        logger.info(f"程序退出")


if __name__ == "__main__":
    main()
