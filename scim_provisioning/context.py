"""
同步上下文

显式传递 vault、数据库会话工厂、HTTP 客户端和时钟，没有全局状态。
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from .config import ProvisioningSettings, load_settings
from .db import create_engine, create_session_factory, init_db, utcnow
from .vault import CredentialVault


@dataclass
class SyncContext:
    settings: ProvisioningSettings
    vault: CredentialVault
    db_engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    http: AsyncClient
    clock: Callable[[], datetime] = utcnow
    _owns_http: bool = field(default=True, repr=False)

    @classmethod
    async def create(
        cls,
        settings: ProvisioningSettings | None = None,
        http: AsyncClient | None = None,
        clock: Callable[[], datetime] = utcnow,
        create_tables: bool = True,
    ) -> "SyncContext":
        """
        创建上下文

        Args:
            settings: 默认从环境变量读取 (缺少密钥时抛出 ConfigurationError)
            http: 外部传入的 AsyncClient 由调用方负责关闭
            create_tables: 启动时建表
        """
        settings = settings or load_settings()
        vault = CredentialVault.from_settings(settings)
        db_engine = create_engine(settings.database_url)
        if create_tables:
            await init_db(db_engine)
        owns_http = http is None
        if http is None:
            http = AsyncClient(timeout=settings.request_timeout)
        return cls(
            settings=settings,
            vault=vault,
            db_engine=db_engine,
            session_factory=create_session_factory(db_engine),
            http=http,
            clock=clock,
            _owns_http=owns_http,
        )

    async def aclose(self) -> None:
        if self._owns_http:
            await self.http.aclose()
        await self.db_engine.dispose()

    async def __aenter__(self) -> "SyncContext":
        return self

    async def __aexit__(self, *args) -> None:
        await self.aclose()
