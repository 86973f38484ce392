"""
配置

所有配置从环境变量 (前缀 SCIM_PROVISIONING_) 或 .env 文件读取。

加密密钥和 salt 是必填项：缺失时启动失败，不存在默认密钥。
"""

from datetime import datetime

from pydantic import Field, SecretStr, ValidationError as PydanticValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError


VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class ProvisioningSettings(BaseSettings):
    """SCIM 同步服务配置"""

    model_config = SettingsConfigDict(
        env_prefix="SCIM_PROVISIONING_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # 必填: 加密密钥和部署级 salt，分开保存
    encryption_secret: SecretStr = Field(..., description="派生 token 加密密钥的部署密钥")
    encryption_salt: SecretStr = Field(..., description="部署级 KDF salt，与密钥分开保存")

    # 密钥轮换
    previous_encryption_secrets: list[SecretStr] = Field(
        default_factory=list,
        description="轮换前的旧密钥，只用于解密",
    )
    encryption_key_created_at: datetime | None = None
    key_rotation_days: int = Field(90, ge=1)

    database_url: str = "sqlite+aiosqlite:///./scim_provisioning.db"

    # 超时 (秒)
    request_timeout: float = Field(30.0, gt=0)
    run_timeout: float = Field(600.0, gt=0)

    # 调度 (秒)
    default_sync_frequency: int = Field(300, ge=1)
    min_sync_frequency: int = Field(60, ge=1)
    scheduler_poll_interval: float = Field(30.0, gt=0)

    performed_by: str = "SCIM_SYNC"
    log_level: str = "INFO"

    @field_validator("encryption_secret", "encryption_salt")
    @classmethod
    def _validate_key_material(cls, v: SecretStr, info) -> SecretStr:
        value = v.get_secret_value().strip()
        if len(value) < 16:
            raise ValueError(f"{info.field_name} 至少需要 16 个字符")
        return SecretStr(value)

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, v: str) -> str:
        if v.upper() not in VALID_LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL 必须是: {', '.join(VALID_LOG_LEVELS)}")
        return v.upper()

    @model_validator(mode="after")
    def _salt_differs_from_secret(self) -> "ProvisioningSettings":
        if self.encryption_salt.get_secret_value() == self.encryption_secret.get_secret_value():
            raise ValueError("encryption_salt 不能与 encryption_secret 相同")
        if self.min_sync_frequency > self.default_sync_frequency:
            raise ValueError("min_sync_frequency 不能大于 default_sync_frequency")
        return self


def load_settings(**overrides) -> ProvisioningSettings:
    """
    读取配置

    Raises:
        ConfigurationError: 必填项缺失或值非法
    """
    try:
        return ProvisioningSettings(**overrides)
    except PydanticValidationError as e:
        fields = sorted({".".join(str(p) for p in err["loc"]) or "<root>" for err in e.errors()})
        raise ConfigurationError(f"配置无效: {', '.join(fields)}") from e
