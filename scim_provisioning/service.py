"""
ProvisioningService

对外入口，把各组件组装在一起：

    async with await ProvisioningService.open() as service:
        endpoint = await service.create_endpoint({...})
        result = await service.sync_users(endpoint.id)
"""

import logging

from .audit import AuditLogger, ProvisioningSource
from .client import DirectoryClient
from .config import ProvisioningSettings
from .context import SyncContext
from .db import OrganizationUser, SCIMEndpoint
from .models import SyncResult
from .orchestrator import SyncOrchestrator, SyncStatusReport
from .reconcile import ReconciliationEngine
from .registry import EndpointConfig, EndpointRegistry
from .scheduler import Scheduler

logger = logging.getLogger(__name__)


class ProvisioningService:
    """SCIM 同步服务"""

    def __init__(self, context: SyncContext):
        settings = context.settings
        self.context = context
        self.audit = AuditLogger(context.session_factory, settings.performed_by, context.clock)
        self.registry = EndpointRegistry(
            context.session_factory,
            context.vault,
            default_sync_frequency=settings.default_sync_frequency,
            min_sync_frequency=settings.min_sync_frequency,
            clock=context.clock,
        )
        self.directory = DirectoryClient(context.http, timeout=settings.request_timeout)
        self.engine = ReconciliationEngine(context.session_factory, self.audit, context.clock)
        self.orchestrator = SyncOrchestrator(
            self.registry,
            self.directory,
            self.engine,
            self.audit,
            run_timeout=settings.run_timeout,
            clock=context.clock,
        )
        self.scheduler = Scheduler(
            self.registry,
            self.orchestrator,
            poll_interval=settings.scheduler_poll_interval,
            clock=context.clock,
        )

    @classmethod
    async def open(cls, settings: ProvisioningSettings | None = None, **kwargs) -> "ProvisioningService":
        return cls(await SyncContext.create(settings, **kwargs))

    async def aclose(self) -> None:
        self.scheduler.stop()
        await self.context.aclose()

    async def __aenter__(self) -> "ProvisioningService":
        return self

    async def __aexit__(self, *args) -> None:
        await self.aclose()

    # ============ 端点 ============

    async def create_endpoint(self, config: EndpointConfig | dict) -> SCIMEndpoint:
        return await self.registry.create_endpoint(config)

    async def list_endpoints(self, organization_id: str | None = None) -> list[SCIMEndpoint]:
        return await self.registry.list_endpoints(organization_id)

    async def deactivate_endpoint(self, endpoint_id: str) -> SCIMEndpoint:
        return await self.scheduler.deactivate_endpoint(endpoint_id)

    async def rotate_tokens(self) -> int:
        return await self.registry.rotate_tokens()

    # ============ 同步 ============

    async def sync_users(self, endpoint_id: str) -> SyncResult:
        return await self.orchestrator.sync_users(endpoint_id)

    async def sync_groups(self, endpoint_id: str) -> SyncResult:
        return await self.orchestrator.sync_groups(endpoint_id)

    async def get_sync_status(self, endpoint_id: str) -> SyncStatusReport:
        return await self.orchestrator.get_sync_status(endpoint_id)

    async def schedule_sync(self, endpoint_id: str, run_now: bool = False):
        return await self.scheduler.schedule_sync(endpoint_id, run_now=run_now)

    # ============ 用户 ============

    async def deactivate_user(self, user_id: str, organization_id: str) -> OrganizationUser:
        return await self.engine.deactivate_user(user_id, organization_id, ProvisioningSource())
