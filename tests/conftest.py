import asyncio
from datetime import datetime, timedelta

import httpx
import pytest

from scim_provisioning import ProvisioningService, load_settings
from scim_provisioning.models import LIST_RESPONSE_SCHEMA, USER_SCHEMA, GROUP_SCHEMA

SECRET = "test-deployment-secret-0123456789"
SALT = "test-deployment-salt-abcdefghij"
IDP_TOKEN = "idp-bearer-token-s3cr3t"
ENDPOINT_URL = "https://idp.example.com/scim/v2"
ORG = "org-1"


class Clock:
    """可控时钟"""

    def __init__(self, now: datetime = datetime(2026, 1, 1, 12, 0, 0)):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeDirectory:
    """假的身份提供方，挂在 httpx.MockTransport 上"""

    def __init__(self):
        self.users: list = []
        self.groups: list = []
        self.token = IDP_TOKEN
        self.status = 200
        self.requests: list[httpx.Request] = []
        self.started = asyncio.Event()
        # 设置后请求会阻塞直到 gate.set()
        self.gate: asyncio.Event | None = None

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if request.headers.get("Authorization") != f"Bearer {self.token}":
            return httpx.Response(401, json={"status": "401", "detail": "Unauthorized"})
        if self.status != 200:
            return httpx.Response(self.status, json={"status": str(self.status), "detail": "boom"})
        resources = self.users if request.url.path.endswith("/Users") else self.groups
        return httpx.Response(
            200,
            json={"schemas": [LIST_RESPONSE_SCHEMA], "totalResults": len(resources), "Resources": resources},
        )


def make_user(uid: str, email: str | None, active: bool = True, **extra) -> dict:
    data = {
        "schemas": [USER_SCHEMA],
        "id": uid,
        "userName": extra.pop("userName", uid),
        "name": extra.pop("name", {"givenName": "Test", "familyName": uid}),
        "active": active,
    }
    if email is not None:
        data["emails"] = [{"value": email, "type": "work", "primary": True}]
    data.update(extra)
    return data


def make_group(gid: str, name: str, members: list[str] = ()) -> dict:
    return {
        "schemas": [GROUP_SCHEMA],
        "id": gid,
        "displayName": name,
        "members": [{"value": m} for m in members],
    }


@pytest.fixture
def settings(tmp_path):
    return load_settings(
        _env_file=None,
        encryption_secret=SECRET,
        encryption_salt=SALT,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'provisioning.db'}",
        run_timeout=5,
    )


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def directory():
    return FakeDirectory()


@pytest.fixture
async def service(settings, directory, clock):
    http = httpx.AsyncClient(transport=httpx.MockTransport(directory.handler))
    svc = await ProvisioningService.open(settings, http=http, clock=clock)
    yield svc
    await svc.aclose()
    await http.aclose()


@pytest.fixture
async def endpoint(service):
    return await service.create_endpoint({
        "organization_id": ORG,
        "identity_provider_id": "okta",
        "endpoint_url": ENDPOINT_URL,
        "bearer_token": IDP_TOKEN,
    })
