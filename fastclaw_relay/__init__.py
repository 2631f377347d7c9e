"""
FastClaw Relay：把本地 OpenClaw Gateway 的会话、消息、健康状态与定时任务同步到远端存储，
并把 App 端发起的消息与定时任务操作回送到本地。
"""

__version__ = "1.0.0"
