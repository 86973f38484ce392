"""
端点注册表

SCIMEndpoint 的持久化操作。token 只以密文保存，解密只在同步开始时进行。
端点不会被删除，只会被停用。
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .db import SCIMEndpoint, utcnow
from .errors import ConcurrencyError, ConfigurationError, NotFoundError, PersistenceError
from .log import REDACTED
from .models import SyncStatus
from .vault import CredentialVault

logger = logging.getLogger(__name__)


class EndpointConfig(BaseModel):
    """创建端点的参数"""
    model_config = ConfigDict(extra="forbid")

    organization_id: str = Field(..., min_length=1)
    identity_provider_id: str = Field(..., min_length=1)
    endpoint_url: str
    bearer_token: SecretStr
    sync_frequency: int | None = Field(None, gt=0)

    @field_validator("endpoint_url")
    @classmethod
    def _validate_url(cls, v: str) -> str:
        v = v.strip()
        if not v.startswith(("https://", "http://")):
            raise ValueError("endpoint_url 必须是 http(s) URL")
        return v.rstrip("/")

    @field_validator("bearer_token")
    @classmethod
    def _token_not_blank(cls, v: SecretStr) -> SecretStr:
        if not v.get_secret_value().strip():
            raise ValueError("bearer_token 不能为空")
        return v


@dataclass(frozen=True)
class EndpointView:
    """对外展示的端点信息，token 已屏蔽"""
    id: str
    organization_id: str
    identity_provider_id: str
    endpoint_url: str
    bearer_token: str
    sync_frequency: int
    sync_status: SyncStatus
    last_sync_at: datetime | None
    next_sync_at: datetime | None
    error_log: str | None
    is_active: bool

    @classmethod
    def from_row(cls, endpoint: SCIMEndpoint) -> "EndpointView":
        return cls(
            id=endpoint.id,
            organization_id=endpoint.organization_id,
            identity_provider_id=endpoint.identity_provider_id,
            endpoint_url=endpoint.endpoint_url,
            bearer_token=REDACTED,
            sync_frequency=endpoint.sync_frequency,
            sync_status=endpoint.sync_status,
            last_sync_at=endpoint.last_sync_at,
            next_sync_at=endpoint.next_sync_at,
            error_log=endpoint.error_log,
            is_active=endpoint.is_active,
        )


class EndpointRegistry:
    """SCIMEndpoint 的读写"""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        vault: CredentialVault,
        default_sync_frequency: int = 300,
        min_sync_frequency: int = 60,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.vault = vault
        self.default_sync_frequency = default_sync_frequency
        self.min_sync_frequency = min_sync_frequency
        self.clock = clock

    # ============ 创建/查询 ============

    async def create_endpoint(self, config: EndpointConfig | dict, schedule: bool = True) -> SCIMEndpoint:
        """
        创建端点

        token 加密后保存；schedule=True 时立即进入调度队列

        Raises:
            ConfigurationError: 参数非法
        """
        if isinstance(config, dict):
            try:
                config = EndpointConfig.model_validate(config)
            except PydanticValidationError as e:
                fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
                raise ConfigurationError(f"端点配置无效: {', '.join(fields)}") from e

        frequency = config.sync_frequency or self.default_sync_frequency
        if frequency < self.min_sync_frequency:
            raise ConfigurationError(f"sync_frequency 不能小于 {self.min_sync_frequency} 秒")

        now = self.clock()
        endpoint = SCIMEndpoint(
            organization_id=config.organization_id,
            identity_provider_id=config.identity_provider_id,
            endpoint_url=config.endpoint_url,
            bearer_token=self.vault.encrypt(config.bearer_token.get_secret_value()),
            sync_frequency=frequency,
            sync_status=SyncStatus.PENDING,
            next_sync_at=now if schedule else None,
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        await self._write(lambda session: session.add(endpoint))
        logger.info(
            "创建端点 %s [org: %s, url: %s, 频率: %ss]",
            endpoint.id, endpoint.organization_id, endpoint.endpoint_url, frequency,
        )
        return endpoint

    async def get_endpoint(self, endpoint_id: str) -> SCIMEndpoint:
        async with self.session_factory() as session:
            endpoint = await session.get(SCIMEndpoint, endpoint_id)
        if endpoint is None:
            raise NotFoundError(f"SCIM 端点不存在: {endpoint_id}")
        return endpoint

    async def list_endpoints(self, organization_id: str | None = None, active_only: bool = False) -> list[SCIMEndpoint]:
        stmt = select(SCIMEndpoint).order_by(SCIMEndpoint.created_at)
        if organization_id is not None:
            stmt = stmt.where(SCIMEndpoint.organization_id == organization_id)
        if active_only:
            stmt = stmt.where(SCIMEndpoint.is_active.is_(True))
        async with self.session_factory() as session:
            return list((await session.scalars(stmt)).all())

    async def list_due(self, now: datetime | None = None) -> list[SCIMEndpoint]:
        """到期需要同步的活跃端点"""
        now = now or self.clock()
        stmt = (
            select(SCIMEndpoint)
            .where(SCIMEndpoint.is_active.is_(True))
            .where(SCIMEndpoint.next_sync_at.is_not(None))
            .where(SCIMEndpoint.next_sync_at <= now)
            .order_by(SCIMEndpoint.next_sync_at)
        )
        async with self.session_factory() as session:
            return list((await session.scalars(stmt)).all())

    def decrypt_token(self, endpoint: SCIMEndpoint) -> str:
        """Raises ConfigurationError"""
        return self.vault.decrypt(endpoint.bearer_token)

    # ============ 同步状态 ============

    async def begin_sync(self, endpoint_id: str, stale_after: float) -> SCIMEndpoint:
        """
        进入 IN_PROGRESS 并记录 last_sync_at

        原子操作：端点已在同步中则拒绝，除非上次同步已超过 stale_after 秒

        Raises:
            NotFoundError: 端点不存在
            ConfigurationError: 端点已停用
            ConcurrencyError: 端点正在同步
        """
        now = self.clock()
        stale_before = now - timedelta(seconds=stale_after)
        try:
            async with self.session_factory() as session, session.begin():
                endpoint = await session.get(SCIMEndpoint, endpoint_id)
                if endpoint is None:
                    raise NotFoundError(f"SCIM 端点不存在: {endpoint_id}")
                if not endpoint.is_active:
                    raise ConfigurationError(f"SCIM 端点已停用: {endpoint_id}")
                was_stale = endpoint.sync_status is SyncStatus.IN_PROGRESS

                result = await session.execute(
                    update(SCIMEndpoint)
                    .where(SCIMEndpoint.id == endpoint_id)
                    .where(
                        or_(
                            SCIMEndpoint.sync_status != SyncStatus.IN_PROGRESS,
                            SCIMEndpoint.last_sync_at.is_(None),
                            SCIMEndpoint.last_sync_at < stale_before,
                        )
                    )
                    .values(
                        sync_status=SyncStatus.IN_PROGRESS,
                        last_sync_at=now,
                        error_log=None,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    raise ConcurrencyError(f"端点 {endpoint_id} 正在同步中")
                await session.refresh(endpoint)
        except SQLAlchemyError as e:
            raise PersistenceError(f"更新端点状态失败: {e}") from e

        if was_stale:
            logger.warning("端点 %s 上次同步超时未结束，已回收", endpoint_id)
        return endpoint

    async def finish_sync(self, endpoint_id: str, status: SyncStatus, error_log: str | None = None) -> None:
        """写入最终状态和错误摘要"""
        now = self.clock()
        await self._execute(
            update(SCIMEndpoint)
            .where(SCIMEndpoint.id == endpoint_id)
            .values(sync_status=status, error_log=error_log, updated_at=now)
        )
        logger.info("端点 %s 同步结束: %s", endpoint_id, status.value)

    # ============ 调度 ============

    async def reschedule(self, endpoint_id: str, next_sync_at: datetime | None) -> None:
        await self._execute(
            update(SCIMEndpoint)
            .where(SCIMEndpoint.id == endpoint_id)
            .where(SCIMEndpoint.is_active.is_(True))
            .values(next_sync_at=next_sync_at, updated_at=self.clock())
        )

    async def deactivate(self, endpoint_id: str) -> SCIMEndpoint:
        """停用端点，清除调度；记录保留以保持审计连续性"""
        endpoint = await self.get_endpoint(endpoint_id)
        await self._execute(
            update(SCIMEndpoint)
            .where(SCIMEndpoint.id == endpoint_id)
            .values(is_active=False, next_sync_at=None, updated_at=self.clock())
        )
        logger.info("停用端点 %s", endpoint_id)
        return await self.get_endpoint(endpoint.id)

    # ============ 密钥轮换 ============

    async def rotate_tokens(self) -> int:
        """
        用当前密钥重新加密所有旧密钥加密的 token

        Returns:
            重新加密的端点数量
        """
        rotated = 0
        try:
            async with self.session_factory() as session, session.begin():
                for endpoint in (await session.scalars(select(SCIMEndpoint))).all():
                    if self.vault.needs_rotation(endpoint.bearer_token):
                        endpoint.bearer_token = self.vault.rotate(endpoint.bearer_token)
                        rotated += 1
        except SQLAlchemyError as e:
            raise PersistenceError(f"token 轮换失败: {e}") from e
        logger.info("重新加密 %d 个端点 token", rotated)
        return rotated

    # ============ 内部 ============

    async def _execute(self, stmt) -> None:
        try:
            async with self.session_factory() as session, session.begin():
                await session.execute(stmt)
        except SQLAlchemyError as e:
            raise PersistenceError(f"更新端点失败: {e}") from e

    async def _write(self, fn) -> None:
        try:
            async with self.session_factory() as session, session.begin():
                fn(session)
        except SQLAlchemyError as e:
            raise PersistenceError(f"写入端点失败: {e}") from e
