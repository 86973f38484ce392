#!/usr/bin/env python3
"""
SCIM Provisioning CLI
"""
import argparse
import asyncio
import json
import os
import sys

from scim_provisioning import (
    ConfigurationError,
    CredentialVault,
    KeyRotationPolicy,
    ProvisioningError,
    ProvisioningService,
    SyncResult,
    load_settings,
)
from scim_provisioning.db import SCIMEndpoint, utcnow
from scim_provisioning.log import configure_logging
from scim_provisioning.registry import EndpointView

TOKEN_ENV = "SCIM_ENDPOINT_TOKEN"


def run(coro_fn):
    """打开服务，执行命令，统一错误输出"""
    def wrapper(args):
        async def main():
            service = await ProvisioningService.open()
            try:
                return await coro_fn(service, args)
            finally:
                await service.aclose()
        try:
            return asyncio.run(main()) or 0
        except ProvisioningError as e:
            print(f"✗ {type(e).__name__}: {e}")
            return 1
    return wrapper


def endpoint_to_dict(endpoint: SCIMEndpoint) -> dict:
    view = EndpointView.from_row(endpoint)
    return {
        "id": view.id,
        "organization_id": view.organization_id,
        "identity_provider_id": view.identity_provider_id,
        "endpoint_url": view.endpoint_url,
        "bearer_token": view.bearer_token,
        "sync_frequency": view.sync_frequency,
        "sync_status": view.sync_status.value,
        "last_sync_at": view.last_sync_at.isoformat() if view.last_sync_at else None,
        "next_sync_at": view.next_sync_at.isoformat() if view.next_sync_at else None,
        "is_active": view.is_active,
    }


def print_result(label: str, result: SyncResult):
    print(f"{label}: {result.status.value}  创建:{result.created} 更新:{result.updated} 错误:{result.errors}")
    for err in result.error_details:
        print(f"  ✗ {err}")


# ========== 端点命令 ==========

@run
async def cmd_endpoint_create(service: ProvisioningService, args):
    token = args.token or os.environ.get(TOKEN_ENV)
    if not token:
        raise ConfigurationError(f"需要 --token 或环境变量 {TOKEN_ENV}")
    config = {
        "organization_id": args.org,
        "identity_provider_id": args.idp,
        "endpoint_url": args.url,
        "bearer_token": token,
    }
    if args.frequency is not None:
        config["sync_frequency"] = args.frequency
    endpoint = await service.create_endpoint(config)
    print(f"✓ 创建端点: {endpoint.endpoint_url} [id: {endpoint.id}]")


@run
async def cmd_endpoint_list(service: ProvisioningService, args):
    endpoints = await service.list_endpoints(args.org)
    if args.format == "json":
        print(json.dumps([endpoint_to_dict(e) for e in endpoints], indent=2, ensure_ascii=False))
        return
    print(f"共 {len(endpoints)} 个端点:\n")
    for e in endpoints:
        status = "✓" if e.is_active else "✗"
        print(f"  {status} {e.endpoint_url} [{e.sync_status.value}] [org: {e.organization_id}, id: {e.id}]")


@run
async def cmd_endpoint_status(service: ProvisioningService, args):
    report = await service.get_sync_status(args.endpoint_id)
    print(json.dumps(report.as_dict(), indent=2, ensure_ascii=False))


@run
async def cmd_endpoint_deactivate(service: ProvisioningService, args):
    endpoint = await service.deactivate_endpoint(args.endpoint_id)
    print(f"✓ 停用端点: {endpoint.endpoint_url} [id: {endpoint.id}]")


@run
async def cmd_endpoint_rotate_tokens(service: ProvisioningService, args):
    count = await service.rotate_tokens()
    print(f"✓ 重新加密 {count} 个端点 token")


# ========== 同步命令 ==========

@run
async def cmd_sync_users(service: ProvisioningService, args):
    result = await service.sync_users(args.endpoint_id)
    print_result("用户", result)
    return 0 if result.errors == 0 else 2


@run
async def cmd_sync_groups(service: ProvisioningService, args):
    result = await service.sync_groups(args.endpoint_id)
    print_result("组", result)
    return 0 if result.errors == 0 else 2


@run
async def cmd_sync_all(service: ProvisioningService, args):
    results = await service.scheduler.trigger(args.endpoint_id)
    print_result("用户", results["users"])
    print_result("组", results["groups"])
    return 0 if all(r.errors == 0 for r in results.values()) else 2


@run
async def cmd_schedule(service: ProvisioningService, args):
    next_at = await service.schedule_sync(args.endpoint_id, run_now=args.now)
    print(f"✓ 端点 {args.endpoint_id} 下次同步: {next_at.isoformat()} (UTC)")


@run
async def cmd_worker(service: ProvisioningService, args):
    if args.once:
        count = await service.scheduler.run_pending()
        print(f"执行了 {count} 个到期端点")
        return
    await service.scheduler.run_forever()


# ========== 用户命令 ==========

@run
async def cmd_user_deactivate(service: ProvisioningService, args):
    await service.deactivate_user(args.user_id, args.org)
    print(f"✓ 停用用户 {args.user_id} [org: {args.org}]")


# ========== 密钥命令 ==========

def cmd_key_status(args):
    try:
        settings = load_settings()
    except ConfigurationError as e:
        print(f"✗ {e}")
        return 1
    vault = CredentialVault.from_settings(settings)
    print(f"当前密钥: {vault.key_id}")
    print(f"旧密钥数量: {len(settings.previous_encryption_secrets)}")
    created_at = settings.encryption_key_created_at
    if created_at is None:
        print("未设置 ENCRYPTION_KEY_CREATED_AT，无法计算轮换时间")
        return 0
    policy = KeyRotationPolicy.from_settings(settings)
    now = utcnow()
    created_at = created_at.replace(tzinfo=None)
    print(f"下次轮换: {policy.next_rotation(created_at).isoformat()}")
    if policy.is_due(created_at, now):
        print("⚠ 密钥已到轮换时间")
        return 2
    if policy.should_notify(created_at, now):
        print("⚠ 密钥即将到轮换时间")
    return 0


# ========== 主函数 ==========

def main():
    parser = argparse.ArgumentParser(prog='scim-provisioning', description='SCIM 目录同步')
    subparsers = parser.add_subparsers(dest='command', help='命令')

    # endpoint 命令
    endpoint_parser = subparsers.add_parser('endpoint', help='端点管理')
    endpoint_sub = endpoint_parser.add_subparsers(dest='action')

    p = endpoint_sub.add_parser('create', help='创建端点')
    p.add_argument('--org', required=True, help='组织 id')
    p.add_argument('--idp', required=True, help='身份提供方 id')
    p.add_argument('--url', required=True, help='SCIM base URL')
    p.add_argument('--token', help=f'bearer token，默认读取环境变量 {TOKEN_ENV}')
    p.add_argument('--frequency', type=int, help='同步间隔（秒）')
    p.set_defaults(func=cmd_endpoint_create)

    p = endpoint_sub.add_parser('list', help='列出端点')
    p.add_argument('--org', help='只列出该组织的端点')
    p.add_argument('--format', choices=['table', 'json'], default='table')
    p.set_defaults(func=cmd_endpoint_list)

    p = endpoint_sub.add_parser('status', help='端点同步状态')
    p.add_argument('endpoint_id')
    p.set_defaults(func=cmd_endpoint_status)

    p = endpoint_sub.add_parser('deactivate', help='停用端点')
    p.add_argument('endpoint_id')
    p.set_defaults(func=cmd_endpoint_deactivate)

    p = endpoint_sub.add_parser('rotate-tokens', help='用当前密钥重新加密所有 token')
    p.set_defaults(func=cmd_endpoint_rotate_tokens)

    # sync 命令
    sync_parser = subparsers.add_parser('sync', help='立即同步')
    sync_sub = sync_parser.add_subparsers(dest='action')

    p = sync_sub.add_parser('users', help='同步用户')
    p.add_argument('endpoint_id')
    p.set_defaults(func=cmd_sync_users)

    p = sync_sub.add_parser('groups', help='同步组')
    p.add_argument('endpoint_id')
    p.set_defaults(func=cmd_sync_groups)

    p = sync_sub.add_parser('all', help='同步用户和组')
    p.add_argument('endpoint_id')
    p.set_defaults(func=cmd_sync_all)

    # user 命令
    user_parser = subparsers.add_parser('user', help='本地用户管理')
    user_sub = user_parser.add_subparsers(dest='action')

    p = user_sub.add_parser('deactivate', help='停用用户的组织成员关系')
    p.add_argument('user_id')
    p.add_argument('--org', required=True, help='组织 id')
    p.set_defaults(func=cmd_user_deactivate)

    # 调度
    p = subparsers.add_parser('schedule', help='注册/刷新端点的周期同步')
    p.add_argument('endpoint_id')
    p.add_argument('--now', action='store_true', help='立即到期')
    p.set_defaults(func=cmd_schedule)

    p = subparsers.add_parser('worker', help='运行调度器')
    p.add_argument('--once', action='store_true', help='只执行一轮到期端点')
    p.set_defaults(func=cmd_worker)

    # key 命令
    key_parser = subparsers.add_parser('key', help='加密密钥')
    key_sub = key_parser.add_subparsers(dest='action')

    p = key_sub.add_parser('status', help='密钥和轮换状态')
    p.set_defaults(func=cmd_key_status)

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 0

    configure_logging(os.environ.get("SCIM_PROVISIONING_LOG_LEVEL", "INFO").upper())

    if hasattr(args, 'func'):
        return args.func(args) or 0
    else:
        parser.parse_args([args.command, '-h'])
        return 0


if __name__ == "__main__":
    sys.exit(main())
