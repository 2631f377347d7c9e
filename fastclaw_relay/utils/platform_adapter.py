"""
跨平台适配层
为 connect 握手的 client.platform 与默认实例名提供统一的平台/设备标识。
"""
import sys
import platform

# 平台标识
_PLATFORM = sys.platform
IS_WINDOWS = _PLATFORM == "win32"
IS_MACOS = _PLATFORM == "darwin"
IS_LINUX = _PLATFORM.startswith("linux")


def get_device_name() -> str:
    """当前设备/机器标识，用作默认 instanceName。优先 hostname，失败则 platform.node()。"""
    try:
        import socket
        return (socket.gethostname() or "").strip() or (platform.node() or "").strip() or "unknown"
    except OSError:
        pass
    return (platform.node() or "").strip() or "unknown"


def platform_name():
    """当前平台名称（与 Node 的 process.platform 取值一致，Gateway 以此展示客户端来源）"""
    if IS_WINDOWS:
        return "win32"
    if IS_MACOS:
        return "darwin"
    if IS_LINUX:
        return "linux"
    return _PLATFORM
