import logging

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from scim_provisioning import (
    NotFoundError,
    PersistenceError,
    ProvisioningAction,
    ProvisioningResult,
    ReconcileOutcome,
    ValidationError,
)
from scim_provisioning.db import (
    LocalUser,
    OrganizationRole,
    OrganizationRoleMember,
    OrganizationUser,
    ProvisioningAudit,
)
from scim_provisioning.models import parse_group, parse_user

from .conftest import ORG, make_group, make_user


async def rows(service, model):
    async with service.context.session_factory() as session:
        return list((await session.scalars(select(model))).all())


# ============ User ============

async def test_new_user_creates_user_membership_and_audit(service):
    outcome = await service.engine.process_user(parse_user(make_user("u1", "Alice@Example.com")), ORG)

    assert outcome is ReconcileOutcome.CREATED
    [user] = await rows(service, LocalUser)
    assert user.email == "alice@example.com"
    assert user.name == "Test u1"
    [membership] = await rows(service, OrganizationUser)
    assert membership.user_id == user.id
    assert membership.organization_id == ORG
    assert membership.role == "USER"
    assert membership.is_active
    assert membership.external_id == "u1"
    [audit] = await rows(service, ProvisioningAudit)
    assert audit.action is ProvisioningAction.CREATE
    assert audit.result is ProvisioningResult.SUCCESS
    assert audit.user_id == user.id
    assert audit.performed_by == "SCIM_SYNC"
    assert audit.identity_provider_id == "scim-endpoint"


async def test_unchanged_user_writes_no_audit(service, clock):
    remote = parse_user(make_user("u1", "alice@example.com"))
    await service.engine.process_user(remote, ORG)
    clock.advance(60)
    outcome = await service.engine.process_user(remote, ORG)

    assert outcome is ReconcileOutcome.UNCHANGED
    assert len(await rows(service, LocalUser)) == 1
    [membership] = await rows(service, OrganizationUser)
    assert membership.last_active_at == clock.now
    audits = await rows(service, ProvisioningAudit)
    assert [a.action for a in audits] == [ProvisioningAction.CREATE]


async def test_update_reports_changed_fields(service):
    await service.engine.process_user(parse_user(make_user("u1", "alice@example.com")), ORG)
    changed = make_user("u1", "alice@example.com", active=False, name={"formatted": "Alice Smith"})
    await service.engine.process_user(parse_user(changed), ORG)

    [user] = await rows(service, LocalUser)
    assert user.name == "Alice Smith"
    [membership] = await rows(service, OrganizationUser)
    assert not membership.is_active
    audits = await rows(service, ProvisioningAudit)
    assert audits[-1].details == {"changes": ["name", "active"]}


async def test_primary_email_wins_over_first(service):
    remote = make_user("u1", None, emails=[
        {"value": "home@example.com", "type": "home"},
        {"value": "work@example.com", "type": "work", "primary": True},
    ])
    await service.engine.process_user(parse_user(remote), ORG)
    [user] = await rows(service, LocalUser)
    assert user.email == "work@example.com"


async def test_first_email_used_without_primary(service):
    remote = make_user("u1", None, emails=[{"value": "one@example.com"}, {"value": "two@example.com"}])
    await service.engine.process_user(parse_user(remote), ORG)
    [user] = await rows(service, LocalUser)
    assert user.email == "one@example.com"


async def test_existing_user_joins_second_organization(service):
    remote = parse_user(make_user("u1", "alice@example.com"))
    await service.engine.process_user(remote, ORG)
    outcome = await service.engine.process_user(remote, "org-2")

    assert outcome is ReconcileOutcome.UPDATED
    assert len(await rows(service, LocalUser)) == 1
    assert {m.organization_id for m in await rows(service, OrganizationUser)} == {ORG, "org-2"}
    audits = await rows(service, ProvisioningAudit)
    assert audits[-1].details == {"changes": ["membership"]}


async def test_user_without_email_is_rejected(service):
    with pytest.raises(ValidationError) as exc_info:
        await service.engine.process_user(parse_user(make_user("u1", None)), ORG)

    assert exc_info.value.resource_id == "u1"
    assert await rows(service, LocalUser) == []
    [audit] = await rows(service, ProvisioningAudit)
    assert audit.result is ProvisioningResult.FAILURE
    assert audit.scim_resource_id == "u1"


async def test_invalid_resource_is_rejected(service):
    remote = parse_user({"id": "u9", "active": "nope"})
    with pytest.raises(ValidationError):
        await service.engine.process_user(remote, ORG)
    [audit] = await rows(service, ProvisioningAudit)
    assert audit.result is ProvisioningResult.FAILURE
    assert audit.scim_resource_id == "u9"


async def test_failed_membership_rolls_back_user(service, monkeypatch):
    async def broken(*args, **kwargs):
        raise IntegrityError("INSERT INTO organization_users", {}, Exception("constraint failed"))

    monkeypatch.setattr(service.engine, "_create_membership", broken)

    with pytest.raises(PersistenceError):
        await service.engine.process_user(parse_user(make_user("u1", "alice@example.com")), ORG)

    assert await rows(service, LocalUser) == []
    assert await rows(service, OrganizationUser) == []
    [audit] = await rows(service, ProvisioningAudit)
    assert audit.action is ProvisioningAction.CREATE
    assert audit.result is ProvisioningResult.FAILURE


# ============ Group ============

async def test_group_creates_role_with_resolved_members(service):
    await service.engine.process_user(parse_user(make_user("u1", "a@example.com")), ORG)
    await service.engine.process_user(parse_user(make_user("u2", "b@example.com")), ORG)

    outcome = await service.engine.process_group(parse_group(make_group("g1", "Engineering", ["u1", "u2", "ghost"])), ORG)

    assert outcome is ReconcileOutcome.CREATED
    [role] = await rows(service, OrganizationRole)
    assert role.name == "Engineering"
    assert role.description == "SCIM group: Engineering"
    assert role.permissions == []
    assert role.is_active
    assert len(await rows(service, OrganizationRoleMember)) == 2
    audits = await rows(service, ProvisioningAudit)
    assert audits[-1].details["members"] == {"added": 2, "removed": 0, "skipped": ["ghost"]}


async def test_group_membership_follows_remote(service):
    await service.engine.process_user(parse_user(make_user("u1", "a@example.com")), ORG)
    await service.engine.process_user(parse_user(make_user("u2", "b@example.com")), ORG)
    await service.engine.process_group(parse_group(make_group("g1", "Engineering", ["u1", "u2"])), ORG)

    outcome = await service.engine.process_group(parse_group(make_group("g1", "Engineering", ["u2"])), ORG)

    assert outcome is ReconcileOutcome.UPDATED
    [member] = await rows(service, OrganizationRoleMember)
    [u2] = [m for m in await rows(service, OrganizationUser) if m.external_id == "u2"]
    assert member.user_id == u2.user_id


async def test_same_group_name_maps_to_one_role(service):
    await service.engine.process_group(parse_group(make_group("g1", "Sales")), ORG)
    outcome = await service.engine.process_group(parse_group(make_group("g2", "Sales")), ORG)

    assert outcome is ReconcileOutcome.UPDATED
    [role] = await rows(service, OrganizationRole)
    assert role.external_id == "g2"


async def test_unchanged_group_writes_no_audit(service):
    await service.engine.process_user(parse_user(make_user("u1", "a@example.com")), ORG)
    group = parse_group(make_group("g1", "Engineering", ["u1"]))
    await service.engine.process_group(group, ORG)

    outcome = await service.engine.process_group(group, ORG)

    assert outcome is ReconcileOutcome.UNCHANGED
    assert len(await rows(service, OrganizationRoleMember)) == 1
    audits = await rows(service, ProvisioningAudit)
    assert [(a.resource_type.value, a.action) for a in audits] == [
        ("User", ProvisioningAction.CREATE),
        ("Group", ProvisioningAction.CREATE),
    ]


async def test_invalid_group_is_rejected(service):
    with pytest.raises(ValidationError):
        await service.engine.process_group(parse_group({"id": "g1", "displayName": "  "}), ORG)
    assert await rows(service, OrganizationRole) == []


# ============ 停用 ============

async def test_deactivate_user_writes_suspend(service):
    await service.engine.process_user(parse_user(make_user("u1", "a@example.com")), ORG)
    [user] = await rows(service, LocalUser)

    await service.deactivate_user(user.id, ORG)

    [membership] = await rows(service, OrganizationUser)
    assert not membership.is_active
    audits = await rows(service, ProvisioningAudit)
    assert audits[-1].action is ProvisioningAction.SUSPEND
    assert audits[-1].details == {"previously_active": True}


async def test_deactivate_unknown_user(service):
    with pytest.raises(NotFoundError):
        await service.deactivate_user("missing", ORG)


# ============ 审计 ============

async def test_success_is_logged_only_after_commit(service, monkeypatch, caplog):
    caplog.set_level(logging.INFO, logger="scim_provisioning")
    record = service.audit.record

    def failing_commit(session, entry):
        row = record(session, entry)
        if entry.result is ProvisioningResult.SUCCESS:
            raise IntegrityError("INSERT INTO provisioning_audit", {}, Exception("constraint failed"))
        return row

    monkeypatch.setattr(service.audit, "record", failing_commit)

    with pytest.raises(PersistenceError):
        await service.engine.process_user(parse_user(make_user("u1", "alice@example.com")), ORG)

    messages = [r.getMessage() for r in caplog.records if r.name == "scim_provisioning.audit"]
    assert not any("审计 User CREATE u1 [" in m for m in messages)
    assert any("审计 User CREATE u1 失败" in m for m in messages)
    [audit] = await rows(service, ProvisioningAudit)
    assert audit.result is ProvisioningResult.FAILURE


async def test_committed_success_is_logged(service, caplog):
    caplog.set_level(logging.INFO, logger="scim_provisioning")
    await service.engine.process_user(parse_user(make_user("u1", "alice@example.com")), ORG)

    messages = [r.getMessage() for r in caplog.records if r.name == "scim_provisioning.audit"]
    assert any(m.startswith("审计 User CREATE u1 [org: org-1") for m in messages)


async def test_audit_records_are_immutable(service):
    await service.engine.process_user(parse_user(make_user("u1", "a@example.com")), ORG)

    async with service.context.session_factory() as session:
        audit = await session.scalar(select(ProvisioningAudit))
        audit.error_message = "rewritten"
        with pytest.raises(PersistenceError):
            await session.commit()

    async with service.context.session_factory() as session:
        audit = await session.scalar(select(ProvisioningAudit))
        with pytest.raises(PersistenceError):
            await session.delete(audit)
            await session.commit()
