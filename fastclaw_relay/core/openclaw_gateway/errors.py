"""
Gateway 连接与 RPC 的异常类型。
ConnectError 只在 open() 中抛出，触发退避重连；其余异常只影响单个请求，连接仍可用。
"""

CONNECT_TIMEOUT = "timeout"
CONNECT_TRANSPORT = "transport"
CONNECT_PROTOCOL = "protocol"


class GatewayError(Exception):
    """Gateway 相关异常基类。"""


class ConnectError(GatewayError):
    """握手失败。kind: timeout | transport | protocol。"""

    def __init__(self, kind: str, message: str):
        super().__init__(message)
        self.kind = kind

    def __str__(self):
        return f"[{self.kind}] {self.args[0]}"


class RpcError(GatewayError):
    """服务端返回 ok=false，或请求无法发出。"""


class RpcTimeout(GatewayError):
    """请求在截止时间内没有收到响应。"""

    def __init__(self, method: str, timeout: float):
        super().__init__(f"Gateway RPC timeout for {method} ({timeout:g}s)")
        self.method = method
        self.timeout = timeout


class GatewayNotOpenError(RpcError):
    """发送请求时连接尚未打开或已关闭。"""


class GatewayClosingError(RpcError):
    """连接关闭时仍在等待响应的请求统一以此失败。"""
