"""
持久化模型

- scim_endpoints: 远端目录端点，只停用不删除
- users / organization_users / organization_roles / organization_role_members: 对账目标
- provisioning_audit: 只追加的审计记录，ORM 层禁止修改和删除

时间一律使用 naive UTC。
"""

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .errors import PersistenceError
from .models import ProvisioningAction, ProvisioningResult, ResourceType, SyncStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _uuid() -> str:
    return str(uuid4())


class Base(DeclarativeBase):
    pass


# ============ 端点 ============

class SCIMEndpoint(Base):
    __tablename__ = "scim_endpoints"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    identity_provider_id: Mapped[str] = mapped_column(String(64), nullable=False)
    endpoint_url: Mapped[str] = mapped_column(String(2048), nullable=False)
    # 只保存密文
    bearer_token: Mapped[str] = mapped_column(Text, nullable=False)
    sync_frequency: Mapped[int] = mapped_column(Integer, nullable=False)
    sync_status: Mapped[SyncStatus] = mapped_column(
        SAEnum(SyncStatus, native_enum=False, length=16), nullable=False, default=SyncStatus.PENDING
    )
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime)
    next_sync_at: Mapped[datetime | None] = mapped_column(DateTime, index=True)
    error_log: Mapped[str | None] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<SCIMEndpoint id={self.id} org={self.organization_id} status={self.sync_status.value}>"


# ============ 本地身份 ============

class LocalUser(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    name: Mapped[str | None] = mapped_column(String(255))
    email_verified_at: Mapped[datetime | None] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<LocalUser id={self.id} email={self.email}>"


class OrganizationUser(Base):
    __tablename__ = "organization_users"
    __table_args__ = (
        UniqueConstraint("user_id", "organization_id", name="uq_organization_user"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    role: Mapped[str] = mapped_column(String(32), nullable=False, default="USER")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_active_at: Mapped[datetime | None] = mapped_column(DateTime)
    # 远端 SCIM 用户 id，用于解析组成员
    external_id: Mapped[str | None] = mapped_column(String(255), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


class OrganizationRole(Base):
    __tablename__ = "organization_roles"
    __table_args__ = (
        UniqueConstraint("organization_id", "name", name="uq_organization_role_name"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    permissions: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    external_id: Mapped[str | None] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


class OrganizationRoleMember(Base):
    __tablename__ = "organization_role_members"
    __table_args__ = (
        UniqueConstraint("role_id", "user_id", name="uq_organization_role_member"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    role_id: Mapped[str] = mapped_column(String(36), ForeignKey("organization_roles.id"), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


# ============ 审计 ============

class ProvisioningAudit(Base):
    __tablename__ = "provisioning_audit"

    # 自增 id 即决策顺序
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    identity_provider_id: Mapped[str] = mapped_column(String(64), nullable=False)
    scim_endpoint_id: Mapped[str | None] = mapped_column(String(36), index=True)
    resource_type: Mapped[ResourceType] = mapped_column(
        SAEnum(ResourceType, native_enum=False, length=16), nullable=False
    )
    action: Mapped[ProvisioningAction] = mapped_column(
        SAEnum(ProvisioningAction, native_enum=False, length=16), nullable=False
    )
    user_id: Mapped[str | None] = mapped_column(String(36))
    scim_resource_id: Mapped[str | None] = mapped_column(String(255))
    performed_by: Mapped[str] = mapped_column(String(64), nullable=False)
    result: Mapped[ProvisioningResult] = mapped_column(
        SAEnum(ProvisioningResult, native_enum=False, length=16), nullable=False
    )
    error_message: Mapped[str | None] = mapped_column(Text)
    details: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, index=True)

    def __repr__(self) -> str:
        return (
            f"<ProvisioningAudit #{self.id} {self.action.value} {self.result.value} "
            f"resource={self.scim_resource_id}>"
        )


@event.listens_for(ProvisioningAudit, "before_update")
def _reject_audit_update(mapper, connection, target):
    raise PersistenceError(f"审计记录不可修改: #{target.id}")


@event.listens_for(ProvisioningAudit, "before_delete")
def _reject_audit_delete(mapper, connection, target):
    raise PersistenceError(f"审计记录不可删除: #{target.id}")


# ============ 引擎 ============

def create_engine(database_url: str) -> AsyncEngine:
    return create_async_engine(database_url)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


async def init_db(engine: AsyncEngine) -> None:
    """建表 (已存在的表不变)"""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
