"""
SCIM 边界数据模型

远端目录返回的 JSON 在进入对账逻辑之前，先在这里按严格 schema 校验，
得到带标签的变体：

- SCIMUser / SCIMGroup: 校验通过的资源
- InvalidResource: 校验失败的资源 (保留 id 和简短错误信息)

只支持核心 User / Group schema，扩展属性一律忽略。
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictStr, field_validator
from pydantic import ValidationError as PydanticValidationError

from .log import redact


USER_SCHEMA = "urn:ietf:params:scim:schemas:core:2.0:User"
GROUP_SCHEMA = "urn:ietf:params:scim:schemas:core:2.0:Group"
LIST_RESPONSE_SCHEMA = "urn:ietf:params:scim:api:messages:2.0:ListResponse"
SCIM_CONTENT_TYPE = "application/scim+json"


# ============ 枚举 ============

class SyncStatus(str, Enum):
    """端点同步状态"""
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"


class ProvisioningAction(str, Enum):
    """审计记录动作"""
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    SUSPEND = "SUSPEND"


class ProvisioningResult(str, Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"


class ReconcileOutcome(str, Enum):
    """单个资源的对账结果"""
    CREATED = "CREATED"
    UPDATED = "UPDATED"
    # 没有字段变化，不写审计记录
    UNCHANGED = "UNCHANGED"


class ResourceType(str, Enum):
    USER = "User"
    GROUP = "Group"


# ============ User 子属性 ============

class _SCIMModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)


class SCIMName(_SCIMModel):
    """用户姓名 (name)"""
    givenName: StrictStr | None = None
    familyName: StrictStr | None = None
    formatted: StrictStr | None = None


class SCIMEmail(_SCIMModel):
    """
    邮箱 (emails)

    primary=True 的邮箱是匹配本地用户的键
    """
    value: StrictStr
    type: StrictStr | None = None
    primary: StrictBool | None = None

    @field_validator("value")
    @classmethod
    def _value_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("email.value 不能为空")
        return v


class SCIMGroupRef(_SCIMModel):
    """用户所属组的引用 (groups)"""
    value: StrictStr
    display: StrictStr | None = None
    ref: StrictStr | None = Field(None, alias="$ref")


class SCIMMeta(_SCIMModel):
    """资源元数据，只读"""
    resourceType: StrictStr | None = None
    created: StrictStr | None = None
    lastModified: StrictStr | None = None
    version: StrictStr | None = None


# ============ User 资源 ============

class SCIMUser(_SCIMModel):
    """
    远端目录用户

    必填: id, userName
    emails 可以为空，缺少邮箱由对账引擎报告为 ValidationError
    """
    kind: Literal["user"] = Field("user", exclude=True)

    id: StrictStr
    userName: StrictStr
    externalId: StrictStr | None = None
    displayName: StrictStr | None = None
    name: SCIMName | None = None
    emails: list[SCIMEmail] = Field(default_factory=list)
    active: StrictBool = True
    groups: list[SCIMGroupRef] = Field(default_factory=list)
    meta: SCIMMeta | None = None

    @field_validator("id", "userName")
    @classmethod
    def _required_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("不能为空")
        return v

    @field_validator("emails", "groups", mode="before")
    @classmethod
    def _null_as_empty(cls, v: Any) -> Any:
        return [] if v is None else v

    def matching_email(self) -> str | None:
        """
        匹配键: primary 邮箱，否则第一个邮箱

        返回归一化 (小写) 的邮箱地址，没有邮箱时返回 None
        """
        if not self.emails:
            return None
        email = next((e for e in self.emails if e.primary), self.emails[0])
        return email.value.lower()

    def formatted_name(self) -> str:
        """本地用户显示名"""
        if self.name is not None:
            if self.name.formatted:
                return self.name.formatted
            parts = [p for p in (self.name.givenName, self.name.familyName) if p]
            if parts:
                return " ".join(parts)
        return self.displayName or self.userName


# ============ Group 资源 ============

class SCIMGroupMember(_SCIMModel):
    """
    组成员引用 (members)

    value 是远端用户 id
    """
    value: StrictStr
    display: StrictStr | None = None
    type: StrictStr | None = None
    ref: StrictStr | None = Field(None, alias="$ref")


class SCIMGroup(_SCIMModel):
    """远端目录组，对应本地 OrganizationRole"""
    kind: Literal["group"] = Field("group", exclude=True)

    id: StrictStr
    displayName: StrictStr
    externalId: StrictStr | None = None
    members: list[SCIMGroupMember] = Field(default_factory=list)
    meta: SCIMMeta | None = None

    @field_validator("displayName")
    @classmethod
    def _display_name_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("displayName 是必填字段")
        return v

    @field_validator("members", mode="before")
    @classmethod
    def _null_as_empty(cls, v: Any) -> Any:
        return [] if v is None else v

    def member_ids(self) -> set[str]:
        return {m.value for m in self.members}


@dataclass(frozen=True)
class InvalidResource:
    """校验失败的远端资源"""
    resource_type: ResourceType
    resource_id: str | None
    error: str


RemoteUser = SCIMUser | InvalidResource
RemoteGroup = SCIMGroup | InvalidResource


def _compact_error(exc: PydanticValidationError) -> str:
    """pydantic 错误 → 一行摘要"""
    parts = []
    for err in exc.errors()[:3]:
        loc = ".".join(str(p) for p in err["loc"]) or "<root>"
        parts.append(f"{loc}: {err['msg']}")
    if exc.error_count() > 3:
        parts.append(f"... 共 {exc.error_count()} 个错误")
    return "; ".join(parts)


def _raw_id(data: Any) -> str | None:
    if isinstance(data, dict) and isinstance(data.get("id"), str):
        return data["id"]
    return None


def parse_user(data: Any) -> RemoteUser:
    """校验单个 User 资源"""
    if not isinstance(data, dict):
        return InvalidResource(ResourceType.USER, None, "资源不是 JSON 对象")
    try:
        return SCIMUser.model_validate(data)
    except PydanticValidationError as e:
        return InvalidResource(ResourceType.USER, _raw_id(data), _compact_error(e))


def parse_group(data: Any) -> RemoteGroup:
    """校验单个 Group 资源"""
    if not isinstance(data, dict):
        return InvalidResource(ResourceType.GROUP, None, "资源不是 JSON 对象")
    try:
        return SCIMGroup.model_validate(data)
    except PydanticValidationError as e:
        return InvalidResource(ResourceType.GROUP, _raw_id(data), _compact_error(e))


# ============ 响应类型 ============

class ListResponse(BaseModel):
    """
    ListResponse 信封

    Resources 缺失只在 totalResults 为 0 时允许 (RFC 7644 3.4.2)；
    有 Resources 但缺少 totalResults 时按 Resources 长度计
    """
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    schemas: list[StrictStr] = Field(default_factory=lambda: [LIST_RESPONSE_SCHEMA])
    total_results: int | None = Field(None, alias="totalResults")
    resources: list[Any] | None = Field(None, alias="Resources")
    items_per_page: int | None = Field(None, alias="itemsPerPage")
    start_index: int | None = Field(None, alias="startIndex")

    @classmethod
    def from_dict(cls, data: Any) -> "ListResponse":
        """解析信封；格式错误时抛出 ValueError"""
        if not isinstance(data, dict):
            raise ValueError("响应不是 JSON 对象")
        try:
            response = cls.model_validate(data)
        except PydanticValidationError as e:
            raise ValueError(f"ListResponse 格式错误: {_compact_error(e)}") from e
        if response.resources is None:
            if response.total_results != 0:
                raise ValueError("ListResponse 缺少 Resources 数组")
            response.resources = []
        if response.total_results is None:
            response.total_results = len(response.resources)
        return response


@dataclass
class SCIMError:
    """
    SCIM 错误响应

    非 SCIM 格式的错误体保留原始文本
    """
    status: int
    detail: str | None = None
    scim_type: str | None = None

    @classmethod
    def from_dict(cls, data: dict, status_code: int = 0) -> "SCIMError":
        status = data.get("status", status_code)
        try:
            status = int(status)
        except (TypeError, ValueError):
            status = status_code
        return cls(
            status=status,
            detail=data.get("detail") or data.get("message"),
            scim_type=data.get("scimType"),
        )

    def __str__(self) -> str:
        msg = f"[{self.status}] {self.detail or 'Unknown error'}"
        if self.scim_type:
            msg += f" ({self.scim_type})"
        return msg


# ============ 同步结果 ============

@dataclass
class SyncResult:
    """一次同步的结果"""
    created: int = 0
    updated: int = 0
    errors: int = 0
    # 包含在 updated 里
    unchanged: int = 0
    status: SyncStatus = SyncStatus.PENDING
    error_details: list[str] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.created + self.updated + self.errors

    def record(self, outcome: ReconcileOutcome) -> None:
        if outcome is ReconcileOutcome.CREATED:
            self.created += 1
            return
        self.updated += 1
        if outcome is ReconcileOutcome.UNCHANGED:
            self.unchanged += 1

    def record_error(self, resource_id: str | None, message: str) -> None:
        self.errors += 1
        self.error_details.append(f"{resource_id or '?'}: {message}")

    def final_status(self) -> SyncStatus:
        """
        所有资源处理完后的状态

        只要有资源失败就是 PARTIAL；FAILED 只用于整次同步中止
        """
        if self.errors:
            return SyncStatus.PARTIAL
        return SyncStatus.COMPLETED

    def error_summary(self, limit: int = 500) -> str | None:
        """写入端点的简短错误摘要 (不含堆栈和 token)"""
        if not self.errors:
            return None
        summary = redact(f"Errors: {self.errors}; " + "; ".join(self.error_details[:5]))
        if len(summary) > limit:
            summary = summary[: limit - 3] + "..."
        return summary

    def as_dict(self) -> dict:
        return {"created": self.created, "updated": self.updated, "errors": self.errors}
