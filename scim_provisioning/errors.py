"""
SCIM 同步错误类型

致命错误 (中止整次同步，端点 → FAILED):
- ConfigurationError: 配置/密钥缺失或错误，token 无法解密
- AuthenticationError: 远端拒绝 token (401/403)
- TransportError: 网络失败、超时、非 2xx、ListResponse 信封格式错误

单资源错误 (记录审计 FAILURE，同步继续，端点 → PARTIAL):
- ValidationError: 资源格式错误 (例如没有邮箱)
- PersistenceError: 本地写入失败
"""

from .models import SCIMError


class ProvisioningError(Exception):
    """所有同步错误的基类"""


class ConfigurationError(ProvisioningError):
    """配置错误"""


class AuthenticationError(ProvisioningError):
    """远端目录拒绝 bearer token"""
    def __init__(self, message: str, error: SCIMError | None = None):
        super().__init__(message)
        self.error = error


class TransportError(ProvisioningError):
    """网络/协议错误"""
    def __init__(self, message: str, error: SCIMError | None = None):
        super().__init__(message)
        self.error = error


class ValidationError(ProvisioningError):
    """单个远端资源校验失败"""
    def __init__(self, message: str, resource_id: str | None = None):
        super().__init__(message)
        self.resource_id = resource_id


class PersistenceError(ProvisioningError):
    """本地持久化失败"""


class ConcurrencyError(ProvisioningError):
    """同一端点已有同步在运行"""


class NotFoundError(ProvisioningError):
    """端点/用户/成员关系不存在"""


# 中止整次同步的错误
FATAL_ERRORS = (ConfigurationError, AuthenticationError, TransportError)

# 只影响单个资源的错误
RESOURCE_ERRORS = (ValidationError, PersistenceError)
