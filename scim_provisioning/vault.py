"""
端点 bearer token 加密

- AES-256-GCM，每次加密使用新的随机 nonce，nonce 放在密文前面
- 密钥由部署密钥 + 部署级 salt 经 scrypt 派生，每个 vault 实例只派生一次
- 密文格式: "<key_id>:<urlsafe-base64(nonce || ciphertext || tag)>"

key_id 标识派生密钥，用于轮换时找到对应的旧密钥。
"""

import base64
import binascii
import hashlib
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from .config import ProvisioningSettings
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

NONCE_SIZE = 12
KEY_SIZE = 32
# token 只在本用途下有效
_AAD = b"scim-endpoint-bearer-token"

# scrypt 参数 (RFC 7914 推荐的交互式参数)
SCRYPT_N = 2**14
SCRYPT_R = 8
SCRYPT_P = 1


def derive_key(secret: str, salt: str) -> bytes:
    """scrypt 派生 256 位密钥"""
    kdf = Scrypt(salt=salt.encode("utf-8"), length=KEY_SIZE, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P)
    return kdf.derive(secret.encode("utf-8"))


def key_fingerprint(key: bytes) -> str:
    return hashlib.sha256(b"scim-provisioning-key-id:" + key).hexdigest()[:12]


class CredentialVault:
    """
    token 加解密

    Args:
        secret: 部署密钥 (必填)
        salt: 部署级 salt (必填，与密钥分开保存)
        previous_secrets: 轮换前的旧密钥，只用于解密
    """

    def __init__(self, secret: str, salt: str, previous_secrets: list[str] | tuple[str, ...] = ()):
        if not secret or not salt:
            raise ConfigurationError("加密密钥和 salt 都是必填项")
        current = derive_key(secret, salt)
        self._key_id = key_fingerprint(current)
        self._keys: dict[str, AESGCM] = {self._key_id: AESGCM(current)}
        for old in previous_secrets:
            key = derive_key(old, salt)
            self._keys.setdefault(key_fingerprint(key), AESGCM(key))

    @classmethod
    def from_settings(cls, settings: ProvisioningSettings) -> "CredentialVault":
        return cls(
            settings.encryption_secret.get_secret_value(),
            settings.encryption_salt.get_secret_value(),
            [s.get_secret_value() for s in settings.previous_encryption_secrets],
        )

    @property
    def key_id(self) -> str:
        return self._key_id

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            raise ConfigurationError("bearer token 不能为空")
        nonce = os.urandom(NONCE_SIZE)
        sealed = self._keys[self._key_id].encrypt(nonce, plaintext.encode("utf-8"), _AAD)
        payload = base64.urlsafe_b64encode(nonce + sealed).decode("ascii")
        return f"{self._key_id}:{payload}"

    def decrypt(self, ciphertext: str) -> str:
        """
        解密 token

        Raises:
            ConfigurationError: 密文格式错误、密钥未知或密钥不匹配
        """
        key_id, payload = self._split(ciphertext)
        cipher = self._keys.get(key_id)
        if cipher is None:
            raise ConfigurationError(f"token 使用了未知密钥 {key_id}，无法解密")
        try:
            raw = base64.urlsafe_b64decode(payload.encode("ascii"))
        except (binascii.Error, ValueError) as e:
            raise ConfigurationError("token 密文格式错误") from e
        if len(raw) <= NONCE_SIZE + 16:
            raise ConfigurationError("token 密文格式错误")
        try:
            plaintext = cipher.decrypt(raw[:NONCE_SIZE], raw[NONCE_SIZE:], _AAD)
        except InvalidTag as e:
            raise ConfigurationError("token 解密失败: 密钥不匹配或密文被篡改") from e
        return plaintext.decode("utf-8")

    def needs_rotation(self, ciphertext: str) -> bool:
        key_id, _ = self._split(ciphertext)
        return key_id != self._key_id

    def rotate(self, ciphertext: str) -> str:
        """用当前密钥重新加密"""
        if not self.needs_rotation(ciphertext):
            return ciphertext
        rotated = self.encrypt(self.decrypt(ciphertext))
        logger.debug("token 已用密钥 %s 重新加密", self._key_id)
        return rotated

    @staticmethod
    def _split(ciphertext: str) -> tuple[str, str]:
        if not isinstance(ciphertext, str) or ciphertext.count(":") != 1:
            raise ConfigurationError("token 密文格式错误")
        key_id, payload = ciphertext.split(":")
        if not key_id or not payload:
            raise ConfigurationError("token 密文格式错误")
        return key_id, payload


@dataclass
class KeyRotationPolicy:
    """
    密钥轮换策略

    只定义何时需要轮换；密钥托管 (KMS/HSM) 不在本项目范围内。
    """
    rotation_interval_days: int = 90
    notify_days: list[int] = field(default_factory=lambda: [14, 7, 1])

    @classmethod
    def from_settings(cls, settings: ProvisioningSettings) -> "KeyRotationPolicy":
        return cls(rotation_interval_days=settings.key_rotation_days)

    def next_rotation(self, created_at: datetime) -> datetime:
        return created_at + timedelta(days=self.rotation_interval_days)

    def is_due(self, created_at: datetime, now: datetime) -> bool:
        return now >= self.next_rotation(created_at)

    def should_notify(self, created_at: datetime, now: datetime) -> bool:
        remaining = self.next_rotation(created_at) - now
        return any(remaining <= timedelta(days=d) for d in self.notify_days)
