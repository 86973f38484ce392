"""
审计日志

每个对账决策写且只写一条 ProvisioningAudit 记录。

- record(): 写入调用方的事务，和对账变更一起提交或回滚
- log(): 调用方事务提交后写日志，回滚的记录不会出现在日志里
- record_standalone(): 单独事务，用于失败记录 (原事务已回滚)
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .db import ProvisioningAudit, utcnow
from .errors import PersistenceError
from .models import ProvisioningAction, ProvisioningResult, ResourceType

logger = logging.getLogger(__name__)

DEFAULT_IDENTITY_PROVIDER = "scim-endpoint"


@dataclass(frozen=True)
class ProvisioningSource:
    """审计记录的来源: 身份提供方和端点"""
    identity_provider_id: str = DEFAULT_IDENTITY_PROVIDER
    endpoint_id: str | None = None


@dataclass
class AuditEntry:
    """一条待写入的审计记录"""
    organization_id: str
    source: ProvisioningSource
    resource_type: ResourceType
    action: ProvisioningAction
    result: ProvisioningResult
    user_id: str | None = None
    scim_resource_id: str | None = None
    error_message: str | None = None
    details: dict | None = None


class AuditLogger:
    """只追加的审计日志"""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        performed_by: str = "SCIM_SYNC",
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.performed_by = performed_by
        self.clock = clock

    def record(self, session: AsyncSession, entry: AuditEntry) -> ProvisioningAudit:
        """加入调用方事务；提交后由调用方调用 log()"""
        row = ProvisioningAudit(
            organization_id=entry.organization_id,
            identity_provider_id=entry.source.identity_provider_id,
            scim_endpoint_id=entry.source.endpoint_id,
            resource_type=entry.resource_type,
            action=entry.action,
            user_id=entry.user_id,
            scim_resource_id=entry.scim_resource_id,
            performed_by=self.performed_by,
            result=entry.result,
            error_message=entry.error_message,
            details=entry.details or {},
            timestamp=self.clock(),
        )
        session.add(row)
        logger.debug("审计记录待提交: %s %s", entry.resource_type.value, entry.action.value)
        return row

    async def record_standalone(self, entry: AuditEntry) -> ProvisioningAudit:
        """
        单独事务写入

        Raises:
            PersistenceError: 写入失败
        """
        try:
            async with self.session_factory() as session, session.begin():
                row = self.record(session, entry)
        except SQLAlchemyError as e:
            logger.error("审计记录写入失败: %s", e)
            raise PersistenceError(f"审计记录写入失败: {e}") from e
        self.log(entry)
        return row

    async def list_records(
        self,
        endpoint_id: str | None = None,
        organization_id: str | None = None,
        since: datetime | None = None,
        limit: int | None = None,
        newest_first: bool = False,
    ) -> list[ProvisioningAudit]:
        """按决策顺序列出审计记录"""
        stmt = select(ProvisioningAudit)
        if endpoint_id is not None:
            stmt = stmt.where(ProvisioningAudit.scim_endpoint_id == endpoint_id)
        if organization_id is not None:
            stmt = stmt.where(ProvisioningAudit.organization_id == organization_id)
        if since is not None:
            stmt = stmt.where(ProvisioningAudit.timestamp >= since)
        order = ProvisioningAudit.id.desc() if newest_first else ProvisioningAudit.id.asc()
        stmt = stmt.order_by(order)
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self.session_factory() as session:
            return list((await session.scalars(stmt)).all())

    def log(self, entry: AuditEntry) -> None:
        """已提交的审计记录写入日志"""
        if entry.result is ProvisioningResult.SUCCESS:
            logger.info(
                "审计 %s %s %s [org: %s, user: %s]",
                entry.resource_type.value, entry.action.value, entry.scim_resource_id or "-",
                entry.organization_id, entry.user_id or "-",
            )
        else:
            logger.warning(
                "审计 %s %s %s 失败 [org: %s]: %s",
                entry.resource_type.value, entry.action.value, entry.scim_resource_id or "-",
                entry.organization_id, entry.error_message,
            )
