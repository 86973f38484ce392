"""
对账引擎

把单个远端资源落到本地：
- User → LocalUser + OrganizationUser (按邮箱匹配)
- Group → OrganizationRole + 成员 (按组织内组名匹配)

每个资源一个事务。成功时审计记录和变更一起提交，提交后才写日志；
失败时事务回滚，再单独写一条 FAILURE 审计记录。没有任何变化的资源
不写审计记录。
"""

import logging
from datetime import datetime
from typing import Callable

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .audit import AuditEntry, AuditLogger, ProvisioningSource
from .db import LocalUser, OrganizationRole, OrganizationRoleMember, OrganizationUser, utcnow
from .errors import NotFoundError, PersistenceError, ValidationError
from .models import (
    InvalidResource,
    ProvisioningAction,
    ProvisioningResult,
    ReconcileOutcome,
    RemoteGroup,
    RemoteUser,
    ResourceType,
    SCIMGroup,
    SCIMUser,
)

logger = logging.getLogger(__name__)

DEFAULT_MEMBER_ROLE = "USER"


class ReconciliationEngine:
    """远端资源 → 本地记录"""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        audit: AuditLogger,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.audit = audit
        self.clock = clock

    # ============ User ============

    async def process_user(
        self,
        remote: RemoteUser,
        organization_id: str,
        source: ProvisioningSource | None = None,
    ) -> ReconcileOutcome:
        """
        对账单个用户

        匹配键是 primary 邮箱 (否则第一个邮箱)。已存在的用户更新姓名并
        upsert 组织成员关系；不存在时在同一事务里创建用户和成员关系。

        Raises:
            ValidationError: 资源格式错误或没有邮箱
            PersistenceError: 本地写入失败
        """
        source = source or ProvisioningSource()

        if isinstance(remote, InvalidResource):
            await self._fail(organization_id, source, ResourceType.USER, ProvisioningAction.CREATE,
                             remote.resource_id, remote.error)
            raise ValidationError(remote.error, remote.resource_id)

        email = remote.matching_email()
        if email is None:
            message = "用户没有邮箱，无法匹配本地用户"
            await self._fail(organization_id, source, ResourceType.USER, ProvisioningAction.CREATE,
                             remote.id, message)
            raise ValidationError(message, remote.id)

        action = ProvisioningAction.CREATE
        try:
            async with self.session_factory() as session, session.begin():
                user = await session.scalar(select(LocalUser).where(LocalUser.email == email))
                if user is None:
                    outcome, entry = await self._create_user(session, remote, email, organization_id, source)
                else:
                    action = ProvisioningAction.UPDATE
                    outcome, entry = await self._update_user(session, user, remote, organization_id, source)
        except SQLAlchemyError as e:
            message = f"写入用户失败: {type(e).__name__}"
            await self._fail(organization_id, source, ResourceType.USER, action, remote.id, message)
            raise PersistenceError(message) from e
        if entry is not None:
            self.audit.log(entry)
        return outcome

    async def _create_user(
        self,
        session: AsyncSession,
        remote: SCIMUser,
        email: str,
        organization_id: str,
        source: ProvisioningSource,
    ) -> tuple[ReconcileOutcome, AuditEntry]:
        now = self.clock()
        user = LocalUser(
            email=email,
            name=remote.formatted_name(),
            email_verified_at=now,
            created_at=now,
            updated_at=now,
        )
        session.add(user)
        await session.flush()
        await self._create_membership(session, user, remote, organization_id)
        entry = AuditEntry(
            organization_id=organization_id,
            source=source,
            resource_type=ResourceType.USER,
            action=ProvisioningAction.CREATE,
            result=ProvisioningResult.SUCCESS,
            user_id=user.id,
            scim_resource_id=remote.id,
            details={"email": email, "userName": remote.userName, "active": remote.active},
        )
        self.audit.record(session, entry)
        return ReconcileOutcome.CREATED, entry

    async def _update_user(
        self,
        session: AsyncSession,
        user: LocalUser,
        remote: SCIMUser,
        organization_id: str,
        source: ProvisioningSource,
    ) -> tuple[ReconcileOutcome, AuditEntry | None]:
        now = self.clock()
        changes = []

        name = remote.formatted_name()
        if user.name != name:
            user.name = name
            user.updated_at = now
            changes.append("name")

        membership = await session.scalar(
            select(OrganizationUser)
            .where(OrganizationUser.user_id == user.id)
            .where(OrganizationUser.organization_id == organization_id)
        )
        if membership is None:
            await self._create_membership(session, user, remote, organization_id)
            changes.append("membership")
        else:
            if membership.is_active != remote.active:
                membership.is_active = remote.active
                changes.append("active")
            if membership.external_id != remote.id:
                membership.external_id = remote.id
                changes.append("externalId")
            membership.last_active_at = now
            if changes:
                membership.updated_at = now

        if not changes:
            return ReconcileOutcome.UNCHANGED, None

        entry = AuditEntry(
            organization_id=organization_id,
            source=source,
            resource_type=ResourceType.USER,
            action=ProvisioningAction.UPDATE,
            result=ProvisioningResult.SUCCESS,
            user_id=user.id,
            scim_resource_id=remote.id,
            details={"changes": changes},
        )
        self.audit.record(session, entry)
        return ReconcileOutcome.UPDATED, entry

    async def _create_membership(
        self,
        session: AsyncSession,
        user: LocalUser,
        remote: SCIMUser,
        organization_id: str,
    ) -> OrganizationUser:
        now = self.clock()
        membership = OrganizationUser(
            user_id=user.id,
            organization_id=organization_id,
            role=DEFAULT_MEMBER_ROLE,
            is_active=remote.active,
            last_active_at=now,
            external_id=remote.id,
            created_at=now,
            updated_at=now,
        )
        session.add(membership)
        await session.flush()
        return membership

    # ============ Group ============

    async def process_group(
        self,
        remote: RemoteGroup,
        organization_id: str,
        source: ProvisioningSource | None = None,
    ) -> ReconcileOutcome:
        """
        对账单个组

        按 (organization_id, displayName) 匹配 OrganizationRole。成员通过
        OrganizationUser.external_id 解析，无法解析的成员跳过并记录在审计详情里。
        名称、状态和成员都没有变化时返回 UNCHANGED，不写审计记录。

        Raises:
            ValidationError: 资源格式错误
            PersistenceError: 本地写入失败
        """
        source = source or ProvisioningSource()

        if isinstance(remote, InvalidResource):
            await self._fail(organization_id, source, ResourceType.GROUP, ProvisioningAction.CREATE,
                             remote.resource_id, remote.error)
            raise ValidationError(remote.error, remote.resource_id)

        action = ProvisioningAction.CREATE
        try:
            async with self.session_factory() as session, session.begin():
                role = await session.scalar(
                    select(OrganizationRole)
                    .where(OrganizationRole.organization_id == organization_id)
                    .where(OrganizationRole.name == remote.displayName)
                )
                if role is None:
                    role, changes = await self._create_role(session, remote, organization_id)
                    outcome = ReconcileOutcome.CREATED
                else:
                    action = ProvisioningAction.UPDATE
                    changes = self._update_role(role, remote)
                    outcome = ReconcileOutcome.UPDATED

                members = await self._sync_members(session, role, remote, organization_id)
                if members["added"] or members["removed"]:
                    changes.append("members")

                entry = None
                if outcome is ReconcileOutcome.UPDATED and not changes:
                    outcome = ReconcileOutcome.UNCHANGED
                else:
                    if changes:
                        role.updated_at = self.clock()
                    entry = AuditEntry(
                        organization_id=organization_id,
                        source=source,
                        resource_type=ResourceType.GROUP,
                        action=action,
                        result=ProvisioningResult.SUCCESS,
                        scim_resource_id=remote.id,
                        details={"role_id": role.id, "name": role.name, "changes": changes, "members": members},
                    )
                    self.audit.record(session, entry)
        except SQLAlchemyError as e:
            message = f"写入组失败: {type(e).__name__}"
            await self._fail(organization_id, source, ResourceType.GROUP, action, remote.id, message)
            raise PersistenceError(message) from e
        if entry is not None:
            self.audit.log(entry)
        return outcome

    async def _create_role(
        self,
        session: AsyncSession,
        remote: SCIMGroup,
        organization_id: str,
    ) -> tuple[OrganizationRole, list[str]]:
        now = self.clock()
        role = OrganizationRole(
            organization_id=organization_id,
            name=remote.displayName,
            description=f"SCIM group: {remote.displayName}",
            permissions=[],
            is_active=True,
            external_id=remote.id,
            created_at=now,
            updated_at=now,
        )
        session.add(role)
        await session.flush()
        return role, []

    def _update_role(self, role: OrganizationRole, remote: SCIMGroup) -> list[str]:
        changes = []
        description = f"SCIM group: {remote.displayName}"
        if role.description != description:
            role.description = description
            changes.append("description")
        if role.external_id != remote.id:
            role.external_id = remote.id
            changes.append("externalId")
        if not role.is_active:
            role.is_active = True
            changes.append("active")
        return changes

    async def _sync_members(
        self,
        session: AsyncSession,
        role: OrganizationRole,
        remote: SCIMGroup,
        organization_id: str,
    ) -> dict:
        """让角色成员等于远端组成员 (可解析的部分)"""
        remote_ids = remote.member_ids()
        resolved: dict[str, str] = {}
        if remote_ids:
            rows = await session.execute(
                select(OrganizationUser.external_id, OrganizationUser.user_id)
                .where(OrganizationUser.organization_id == organization_id)
                .where(OrganizationUser.external_id.in_(remote_ids))
            )
            resolved = {external_id: user_id for external_id, user_id in rows}
        skipped = sorted(remote_ids - resolved.keys())

        desired = set(resolved.values())
        current = set(
            (await session.scalars(
                select(OrganizationRoleMember.user_id).where(OrganizationRoleMember.role_id == role.id)
            )).all()
        )

        to_add = desired - current
        to_remove = current - desired
        now = self.clock()
        for user_id in sorted(to_add):
            session.add(OrganizationRoleMember(role_id=role.id, user_id=user_id, created_at=now))
        if to_remove:
            await session.execute(
                delete(OrganizationRoleMember)
                .where(OrganizationRoleMember.role_id == role.id)
                .where(OrganizationRoleMember.user_id.in_(to_remove))
            )
        await session.flush()

        if skipped:
            logger.info("组 %s 有 %d 个成员无法解析为本地用户，已跳过", remote.displayName, len(skipped))
        return {"added": len(to_add), "removed": len(to_remove), "skipped": skipped}

    # ============ 停用 ============

    async def deactivate_user(
        self,
        user_id: str,
        organization_id: str,
        source: ProvisioningSource | None = None,
    ) -> OrganizationUser:
        """
        停用用户在组织内的成员关系，写 SUSPEND 审计记录

        Raises:
            NotFoundError: 用户不是该组织成员
            PersistenceError: 本地写入失败
        """
        source = source or ProvisioningSource()
        try:
            async with self.session_factory() as session, session.begin():
                membership = await session.scalar(
                    select(OrganizationUser)
                    .where(OrganizationUser.user_id == user_id)
                    .where(OrganizationUser.organization_id == organization_id)
                )
                if membership is None:
                    raise NotFoundError(f"用户 {user_id} 不是组织 {organization_id} 的成员")
                was_active = membership.is_active
                membership.is_active = False
                membership.updated_at = self.clock()
                entry = AuditEntry(
                    organization_id=organization_id,
                    source=source,
                    resource_type=ResourceType.USER,
                    action=ProvisioningAction.SUSPEND,
                    result=ProvisioningResult.SUCCESS,
                    user_id=user_id,
                    scim_resource_id=membership.external_id,
                    details={"previously_active": was_active},
                )
                self.audit.record(session, entry)
        except SQLAlchemyError as e:
            message = f"停用用户失败: {type(e).__name__}"
            await self._fail(organization_id, source, ResourceType.USER, ProvisioningAction.SUSPEND,
                             None, message, user_id=user_id)
            raise PersistenceError(message) from e
        self.audit.log(entry)
        logger.info("停用用户 %s [org: %s]", user_id, organization_id)
        return membership

    # ============ 内部 ============

    async def _fail(
        self,
        organization_id: str,
        source: ProvisioningSource,
        resource_type: ResourceType,
        action: ProvisioningAction,
        resource_id: str | None,
        message: str,
        user_id: str | None = None,
    ) -> None:
        await self.audit.record_standalone(AuditEntry(
            organization_id=organization_id,
            source=source,
            resource_type=resource_type,
            action=action,
            result=ProvisioningResult.FAILURE,
            user_id=user_id,
            scim_resource_id=resource_id,
            error_message=message,
        ))
