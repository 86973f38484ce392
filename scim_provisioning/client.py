"""
SCIM 目录客户端

使用 httpx.AsyncClient 从远端身份提供方拉取 Users / Groups：
- 每类资源一次 GET，要求 ListResponse 信封
- 401/403 → AuthenticationError，其他失败 → TransportError
- 429 按 Retry-After 有限重试
- 每个资源单独校验，失败的资源以 InvalidResource 返回，不影响其他资源

bearer token 只出现在请求头里，日志中的 headers 一律先屏蔽。
"""

import asyncio
import logging
from json import JSONDecodeError

from httpx import AsyncClient, HTTPError, Response, TimeoutException

from .errors import AuthenticationError, TransportError
from .log import redact_auth
from .models import (
    SCIM_CONTENT_TYPE,
    ListResponse,
    RemoteGroup,
    RemoteUser,
    SCIMError,
    parse_group,
    parse_user,
)

logger = logging.getLogger(__name__)


class DirectoryClient:
    """
    远端 SCIM 目录只读客户端

    Args:
        http: 共享的 AsyncClient (由调用方创建和关闭)
        timeout: 单次请求超时 (秒)
        max_retries: 429 最大重试次数
        max_retry_after: Retry-After 上限 (秒)
    """

    def __init__(
        self,
        http: AsyncClient,
        timeout: float = 30.0,
        max_retries: int = 3,
        max_retry_after: float = 60.0,
    ):
        self.http = http
        self.timeout = timeout
        self.max_retries = max_retries
        self.max_retry_after = max_retry_after

    # ============ 资源 ============

    async def fetch_users(self, url: str, token: str) -> list[RemoteUser]:
        """
        拉取所有用户

        Raises:
            AuthenticationError: token 被拒绝
            TransportError: 网络错误、超时、非 2xx 或信封格式错误
        """
        response = await self._list(url, "Users", token)
        users = [parse_user(item) for item in response.resources]
        logger.info("拉取到 %d 个用户 (totalResults=%d)", len(users), response.total_results)
        return users

    async def fetch_groups(self, url: str, token: str) -> list[RemoteGroup]:
        """拉取所有组，错误同 fetch_users"""
        response = await self._list(url, "Groups", token)
        groups = [parse_group(item) for item in response.resources]
        logger.info("拉取到 %d 个组 (totalResults=%d)", len(groups), response.total_results)
        return groups

    # ============ 底层请求方法 ============

    async def _list(self, url: str, resource: str, token: str) -> ListResponse:
        data = await self._get(f"{url.rstrip('/')}/{resource}", token)
        try:
            return ListResponse.from_dict(data)
        except ValueError as e:
            raise TransportError(f"{resource} 响应格式错误: {e}") from e

    async def _get(self, url: str, token: str) -> dict:
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": SCIM_CONTENT_TYPE,
        }
        attempt = 0
        while True:
            logger.debug("GET %s headers=%s", url, redact_auth(headers))
            try:
                resp = await self.http.get(url, headers=headers, timeout=self.timeout)
            except TimeoutException as e:
                raise TransportError(f"请求超时: GET {url}") from e
            except HTTPError as e:
                raise TransportError(f"请求失败: GET {url}: {type(e).__name__}") from e

            if resp.status_code == 429 and attempt < self.max_retries:
                attempt += 1
                delay = self._retry_after(resp, attempt)
                logger.warning("GET %s 被限流，%.1f 秒后重试 (%d/%d)", url, delay, attempt, self.max_retries)
                await asyncio.sleep(delay)
                continue
            return self._handle_response(resp)

    def _handle_response(self, resp: Response) -> dict:
        """
        处理响应，统一错误处理

        Returns:
            响应 JSON

        Raises:
            AuthenticationError: 401/403
            TransportError: 其他非 2xx 或响应不是 JSON
        """
        if 200 <= resp.status_code < 300:
            try:
                return resp.json()
            except (JSONDecodeError, UnicodeDecodeError) as e:
                raise TransportError(f"响应不是合法 JSON [{resp.status_code}]") from e

        # 解析错误
        try:
            error_data = resp.json()
            if not isinstance(error_data, dict):
                raise ValueError("错误体不是 JSON 对象")
            error = SCIMError.from_dict(error_data, resp.status_code)
        except (ValueError, UnicodeDecodeError):
            error = SCIMError(status=resp.status_code, detail=resp.text[:200] or None)

        if resp.status_code in (401, 403):
            raise AuthenticationError(f"远端拒绝了 bearer token: {error}", error)
        raise TransportError(f"远端返回错误: {error}", error)

    def _retry_after(self, resp: Response, attempt: int) -> float:
        """Retry-After 只支持秒数；缺失时指数退避"""
        value = resp.headers.get("Retry-After")
        try:
            delay = float(value) if value is not None else float(2 ** (attempt - 1))
        except ValueError:
            delay = float(2 ** (attempt - 1))
        return max(0.0, min(delay, self.max_retry_after))
