"""
调度

调度状态持久化在 scim_endpoints.next_sync_at，进程重启不会丢失。
run_forever() 按 poll 间隔检查到期端点，每个端点一次 tick 依次同步用户和组。

同一端点同时只允许一个 tick：进程内用任务表检查，跨进程靠数据库抢占。
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable

from .db import SCIMEndpoint, utcnow
from .errors import ConcurrencyError, ConfigurationError, ProvisioningError
from .models import SyncResult
from .orchestrator import SyncOrchestrator
from .registry import EndpointRegistry

logger = logging.getLogger(__name__)


class Scheduler:
    """按 next_sync_at 触发端点同步"""

    def __init__(
        self,
        registry: EndpointRegistry,
        orchestrator: SyncOrchestrator,
        poll_interval: float = 30.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.registry = registry
        self.orchestrator = orchestrator
        self.poll_interval = poll_interval
        self.clock = clock
        self._running: dict[str, asyncio.Task] = {}
        self._stop = asyncio.Event()

    def is_running(self, endpoint_id: str) -> bool:
        task = self._running.get(endpoint_id)
        return task is not None and not task.done()

    # ============ 调度 ============

    async def schedule_sync(self, endpoint_id: str, run_now: bool = False) -> datetime:
        """
        注册/刷新端点的周期触发

        Returns:
            下次同步时间

        Raises:
            NotFoundError: 端点不存在
            ConfigurationError: 端点已停用
        """
        endpoint = await self.registry.get_endpoint(endpoint_id)
        if not endpoint.is_active:
            raise ConfigurationError(f"SCIM 端点已停用: {endpoint_id}")
        now = self.clock()
        next_at = now if run_now else now + timedelta(seconds=endpoint.sync_frequency)
        await self.registry.reschedule(endpoint_id, next_at)
        logger.info("端点 %s 下次同步: %s (每 %ss)", endpoint_id, next_at.isoformat(), endpoint.sync_frequency)
        return next_at

    async def trigger(self, endpoint_id: str) -> dict[str, SyncResult]:
        """
        立即执行一次 tick (用户，然后组)

        Raises:
            ConcurrencyError: 该端点的 tick 正在运行
            其他错误同 SyncOrchestrator.sync_users
        """
        if self.is_running(endpoint_id):
            raise ConcurrencyError(f"端点 {endpoint_id} 正在同步中")
        task = asyncio.create_task(self._tick(endpoint_id), name=f"scim-sync-{endpoint_id}")
        self._running[endpoint_id] = task
        try:
            return await task
        finally:
            if self._running.get(endpoint_id) is task:
                del self._running[endpoint_id]

    async def _tick(self, endpoint_id: str) -> dict[str, SyncResult]:
        endpoint = await self.registry.get_endpoint(endpoint_id)
        if not endpoint.is_active:
            raise ConfigurationError(f"SCIM 端点已停用: {endpoint_id}")
        # 先推进下次时间，失败的 tick 也不会被立即重试
        await self.registry.reschedule(endpoint_id, self.clock() + timedelta(seconds=endpoint.sync_frequency))

        results = {"users": await self.orchestrator.sync_users(endpoint_id)}
        results["groups"] = await self.orchestrator.sync_groups(endpoint_id)
        return results

    # ============ 循环 ============

    async def run_pending(self) -> int:
        """
        执行所有到期端点，不同端点并行

        Returns:
            触发的端点数量
        """
        due: list[SCIMEndpoint] = [e for e in await self.registry.list_due(self.clock()) if not self.is_running(e.id)]
        if due:
            await asyncio.gather(*(self._run_guarded(e.id) for e in due))
        return len(due)

    async def _run_guarded(self, endpoint_id: str) -> None:
        try:
            results = await self.trigger(endpoint_id)
        except asyncio.CancelledError:
            # 只有 tick 被 deactivate_endpoint 取消时继续轮询
            if asyncio.current_task().cancelling():
                raise
            logger.info("端点 %s 的同步已被取消", endpoint_id)
        except ConcurrencyError as e:
            logger.info("跳过端点 %s: %s", endpoint_id, e)
        except ProvisioningError as e:
            logger.error("端点 %s 同步失败: %s", endpoint_id, e)
        else:
            logger.info(
                "端点 %s 同步完成: users=%s groups=%s",
                endpoint_id, results["users"].as_dict(), results["groups"].as_dict(),
            )

    async def run_forever(self) -> None:
        """轮询直到 stop()"""
        self._stop.clear()
        logger.info("调度器启动，轮询间隔 %ss", self.poll_interval)
        while not self._stop.is_set():
            await self.run_pending()
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.poll_interval)
            except TimeoutError:
                pass
        logger.info("调度器已停止")

    def stop(self) -> None:
        self._stop.set()

    # ============ 停用 ============

    async def deactivate_endpoint(self, endpoint_id: str, cancel_running: bool = True) -> SCIMEndpoint:
        """
        停用端点并清除调度

        cancel_running=True 时取消正在运行的 tick (端点最终为 FAILED)
        """
        endpoint = await self.registry.deactivate(endpoint_id)
        task = self._running.get(endpoint_id)
        if cancel_running and task is not None and not task.done():
            logger.info("取消端点 %s 正在运行的同步", endpoint_id)
            task.cancel()
            await asyncio.wait([task])
            endpoint = await self.registry.get_endpoint(endpoint_id)
        return endpoint
