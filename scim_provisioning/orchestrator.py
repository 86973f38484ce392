"""
同步编排

单个端点一次同步的状态机:

    PENDING/COMPLETED/PARTIAL/FAILED → IN_PROGRESS → COMPLETED | PARTIAL | FAILED

- 进入 IN_PROGRESS 是原子抢占，同一端点不会并发同步
- 拉取失败、认证失败、token 无法解密、超时、取消 → FAILED，异常继续抛出
- 单个资源失败只计数，其他资源继续处理；有失败就是 PARTIAL
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from sqlalchemy import func, select

from .audit import AuditLogger, ProvisioningSource
from .client import DirectoryClient
from .db import OrganizationUser, ProvisioningAudit, utcnow
from .errors import FATAL_ERRORS, RESOURCE_ERRORS, TransportError
from .log import redact
from .models import InvalidResource, ProvisioningResult, ResourceType, SyncResult, SyncStatus
from .reconcile import ReconciliationEngine
from .registry import EndpointRegistry, EndpointView

logger = logging.getLogger(__name__)

RECENT_AUDIT_LIMIT = 10
ERROR_LOG_LIMIT = 500


def _resource_id(remote) -> str | None:
    if isinstance(remote, InvalidResource):
        return remote.resource_id
    return remote.id


def _audit_as_dict(row: ProvisioningAudit) -> dict:
    return {
        "id": row.id,
        "timestamp": row.timestamp.isoformat(),
        "resource_type": row.resource_type.value,
        "action": row.action.value,
        "result": row.result.value,
        "scim_resource_id": row.scim_resource_id,
        "user_id": row.user_id,
        "error_message": row.error_message,
    }


@dataclass
class SyncStatusReport:
    """端点同步状态"""
    endpoint: EndpointView
    status: SyncStatus
    last_sync_at: datetime | None
    next_sync_at: datetime | None
    error_log: str | None
    total_members: int
    last_run_failures: int
    recent_audit: list[dict] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "endpoint_id": self.endpoint.id,
            "organization_id": self.endpoint.organization_id,
            "endpoint_url": self.endpoint.endpoint_url,
            "bearer_token": self.endpoint.bearer_token,
            "is_active": self.endpoint.is_active,
            "status": self.status.value,
            "last_sync_at": self.last_sync_at.isoformat() if self.last_sync_at else None,
            "next_sync_at": self.next_sync_at.isoformat() if self.next_sync_at else None,
            "error_log": self.error_log,
            "total_members": self.total_members,
            "last_run_failures": self.last_run_failures,
            "recent_audit": self.recent_audit,
        }


class SyncOrchestrator:
    """驱动单个端点的一次同步"""

    def __init__(
        self,
        registry: EndpointRegistry,
        directory: DirectoryClient,
        engine: ReconciliationEngine,
        audit: AuditLogger,
        run_timeout: float = 600.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.registry = registry
        self.directory = directory
        self.engine = engine
        self.audit = audit
        self.run_timeout = run_timeout
        self.clock = clock

    # ============ 同步 ============

    async def sync_users(self, endpoint_id: str) -> SyncResult:
        """
        同步端点的所有用户

        Raises:
            NotFoundError: 端点不存在
            ConcurrencyError: 端点正在同步
            ConfigurationError / AuthenticationError / TransportError: 同步失败 (端点已标记 FAILED)
        """
        return await self._run(endpoint_id, ResourceType.USER)

    async def sync_groups(self, endpoint_id: str) -> SyncResult:
        """同步端点的所有组，错误同 sync_users"""
        return await self._run(endpoint_id, ResourceType.GROUP)

    async def _run(self, endpoint_id: str, resource_type: ResourceType) -> SyncResult:
        endpoint = await self.registry.begin_sync(endpoint_id, stale_after=self.run_timeout)
        source = ProvisioningSource(endpoint.identity_provider_id, endpoint.id)
        result = SyncResult(status=SyncStatus.IN_PROGRESS)
        logger.info("开始同步 %s [endpoint: %s, org: %s]", resource_type.value, endpoint.id, endpoint.organization_id)

        try:
            async with asyncio.timeout(self.run_timeout):
                token = self.registry.decrypt_token(endpoint)
                if resource_type is ResourceType.USER:
                    resources = await self.directory.fetch_users(endpoint.endpoint_url, token)
                    process = self.engine.process_user
                else:
                    resources = await self.directory.fetch_groups(endpoint.endpoint_url, token)
                    process = self.engine.process_group

                # 顺序处理，审计记录按决策顺序追加
                for remote in resources:
                    try:
                        outcome = await process(remote, endpoint.organization_id, source)
                    except RESOURCE_ERRORS as e:
                        result.record_error(_resource_id(remote), str(e))
                    else:
                        result.record(outcome)
        except TimeoutError as e:
            await self._fail(endpoint_id, result, f"同步超时 ({self.run_timeout:g}s)")
            raise TransportError(f"端点 {endpoint_id} 同步超时 ({self.run_timeout:g}s)") from e
        except asyncio.CancelledError:
            await asyncio.shield(self._fail(endpoint_id, result, "同步被取消"))
            raise
        except FATAL_ERRORS as e:
            await self._fail(endpoint_id, result, f"{type(e).__name__}: {e}")
            raise
        except Exception as e:
            logger.exception("同步出现未预期的错误 [endpoint: %s]", endpoint_id)
            await self._fail(endpoint_id, result, f"{type(e).__name__}: {e}")
            raise

        result.status = result.final_status()
        await self.registry.finish_sync(endpoint_id, result.status, result.error_summary(ERROR_LOG_LIMIT))
        logger.info(
            "同步 %s 结束 [endpoint: %s]: %s, 创建 %d, 更新 %d (未变化 %d), 失败 %d",
            resource_type.value, endpoint_id, result.status.value,
            result.created, result.updated, result.unchanged, result.errors,
        )
        return result

    async def _fail(self, endpoint_id: str, result: SyncResult, message: str) -> None:
        result.status = SyncStatus.FAILED
        summary = redact(message)
        if len(summary) > ERROR_LOG_LIMIT:
            summary = summary[: ERROR_LOG_LIMIT - 3] + "..."
        logger.error("同步失败 [endpoint: %s]: %s", endpoint_id, summary)
        await self.registry.finish_sync(endpoint_id, SyncStatus.FAILED, summary)

    # ============ 状态 ============

    async def get_sync_status(self, endpoint_id: str) -> SyncStatusReport:
        """
        端点状态报告

        包括成员总数、最近一次同步的失败数和最近 10 条审计记录

        Raises:
            NotFoundError: 端点不存在
        """
        endpoint = await self.registry.get_endpoint(endpoint_id)

        async with self.registry.session_factory() as session:
            total_members = await session.scalar(
                select(func.count())
                .select_from(OrganizationUser)
                .where(OrganizationUser.organization_id == endpoint.organization_id)
                .where(OrganizationUser.is_active.is_(True))
            )
            failures = 0
            if endpoint.last_sync_at is not None:
                failures = await session.scalar(
                    select(func.count())
                    .select_from(ProvisioningAudit)
                    .where(ProvisioningAudit.scim_endpoint_id == endpoint.id)
                    .where(ProvisioningAudit.result == ProvisioningResult.FAILURE)
                    .where(ProvisioningAudit.timestamp >= endpoint.last_sync_at)
                )

        recent = await self.audit.list_records(endpoint_id=endpoint.id, limit=RECENT_AUDIT_LIMIT, newest_first=True)
        return SyncStatusReport(
            endpoint=EndpointView.from_row(endpoint),
            status=endpoint.sync_status,
            last_sync_at=endpoint.last_sync_at,
            next_sync_at=endpoint.next_sync_at,
            error_log=endpoint.error_log,
            total_members=total_members or 0,
            last_run_failures=failures or 0,
            recent_audit=[_audit_as_dict(row) for row in recent],
        )
