"""
SCIM Provisioning

从外部身份提供方的 SCIM 2.0 目录拉取用户和组，同步到本地组织。
"""

from .models import (
    SCIMUser,
    SCIMGroup,
    SCIMName,
    SCIMEmail,
    SCIMGroupMember,
    SCIMError,
    InvalidResource,
    ListResponse,
    SyncResult,
    SyncStatus,
    ReconcileOutcome,
    ProvisioningAction,
    ProvisioningResult,
    ResourceType,
)
from .errors import (
    ProvisioningError,
    ConfigurationError,
    AuthenticationError,
    TransportError,
    ValidationError,
    PersistenceError,
    ConcurrencyError,
    NotFoundError,
)

from .config import ProvisioningSettings, load_settings
from .vault import CredentialVault, KeyRotationPolicy
from .client import DirectoryClient
from .registry import EndpointConfig, EndpointRegistry, EndpointView
from .audit import AuditLogger, ProvisioningSource
from .reconcile import ReconciliationEngine
from .orchestrator import SyncOrchestrator, SyncStatusReport
from .scheduler import Scheduler
from .context import SyncContext
from .service import ProvisioningService

__all__ = [
    # Service
    "ProvisioningService",
    "SyncContext",
    "ProvisioningSettings",
    "load_settings",
    # Components
    "CredentialVault",
    "KeyRotationPolicy",
    "DirectoryClient",
    "EndpointConfig",
    "EndpointRegistry",
    "EndpointView",
    "AuditLogger",
    "ProvisioningSource",
    "ReconciliationEngine",
    "SyncOrchestrator",
    "SyncStatusReport",
    "Scheduler",
    # Models
    "SCIMUser",
    "SCIMGroup",
    "SCIMName",
    "SCIMEmail",
    "SCIMGroupMember",
    "SCIMError",
    "InvalidResource",
    "ListResponse",
    "SyncResult",
    "SyncStatus",
    "ReconcileOutcome",
    "ProvisioningAction",
    "ProvisioningResult",
    "ResourceType",
    # Errors
    "ProvisioningError",
    "ConfigurationError",
    "AuthenticationError",
    "TransportError",
    "ValidationError",
    "PersistenceError",
    "ConcurrencyError",
    "NotFoundError",
]
