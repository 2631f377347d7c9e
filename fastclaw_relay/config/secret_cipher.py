"""
敏感配置（gatewayToken）的本地加密存储。
密钥存于配置目录下的 .fastclaw_key，加密后写入 config.json 时带前缀 enc:，读取时解密。
"""
import os

from cryptography.fernet import Fernet, InvalidToken

from fastclaw_relay.utils.logger import logger

# 加密值前缀，用于区分明文（兼容手写配置）与密文
_ENCRYPTED_PREFIX = "enc:"


def _key_file_path(config_dir: str) -> str:
    """密钥文件路径：config_dir/.fastclaw_key"""
    return os.path.join(config_dir, ".fastclaw_key")


def _get_fernet(config_dir: str, create: bool = True):
    """读取或创建密钥文件，返回 Fernet 实例；不存在且 create=False 时返回 None。"""
    path = _key_file_path(config_dir)
    if os.path.isfile(path):
        with open(path, "rb") as f:
            key = f.read().strip()
        return Fernet(key)
    if not create:
        return None
    key = Fernet.generate_key()
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as f:
        f.write(key)
    try:
        os.chmod(path, 0o600)
    except OSError as e:
        logger.debug(f"设置密钥文件权限失败: {e}")
    return Fernet(key)


def is_encrypted(value) -> bool:
    return isinstance(value, str) and value.startswith(_ENCRYPTED_PREFIX)


def encrypt_value(plain: str, config_dir: str) -> str:
    """
    加密后返回 enc: + token。
    空字符串直接返回空字符串；已是密文则原样返回。
    """
    if not plain or not isinstance(plain, str):
        return plain or ""
    if is_encrypted(plain):
        return plain
    f = _get_fernet(config_dir)
    token = f.encrypt(plain.encode("utf-8"))
    return _ENCRYPTED_PREFIX + token.decode("ascii")


def decrypt_if_encrypted(value: str, config_dir: str) -> str:
    """
    若为 enc: 开头的密文则解密后返回；否则返回原文。
    密钥缺失或密文损坏时抛出 ValueError，由配置层转为 ConfigError。
    """
    if not value or not isinstance(value, str):
        return value or ""
    if not is_encrypted(value):
        return value
    f = _get_fernet(config_dir, create=False)
    if f is None:
        raise ValueError(f"找不到密钥文件 {_key_file_path(config_dir)}，无法解密")
    try:
        token = value[len(_ENCRYPTED_PREFIX):].encode("ascii")
        return f.decrypt(token).decode("utf-8")
    except InvalidToken as e:
        raise ValueError("密文无法用当前密钥解密") from e
