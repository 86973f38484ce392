import logging

import httpx
import pytest

from scim_provisioning import AuthenticationError, DirectoryClient, InvalidResource, SCIMUser, TransportError
from scim_provisioning.models import LIST_RESPONSE_SCHEMA

from .conftest import ENDPOINT_URL, IDP_TOKEN, make_group, make_user


def client_for(handler) -> DirectoryClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return DirectoryClient(http, timeout=5, max_retries=2)


def list_response(resources, total=None) -> httpx.Response:
    return httpx.Response(200, json={
        "schemas": [LIST_RESPONSE_SCHEMA],
        "totalResults": len(resources) if total is None else total,
        "Resources": resources,
    })


async def test_fetch_users_sends_bearer_and_accept():
    seen = []

    def handler(request):
        seen.append(request)
        return list_response([make_user("u1", "a@example.com")])

    users = await client_for(handler).fetch_users(ENDPOINT_URL + "/", IDP_TOKEN)

    assert len(users) == 1
    assert isinstance(users[0], SCIMUser)
    assert str(seen[0].url) == ENDPOINT_URL + "/Users"
    assert seen[0].headers["Authorization"] == f"Bearer {IDP_TOKEN}"
    assert seen[0].headers["Accept"] == "application/scim+json"


async def test_invalid_resource_does_not_break_batch():
    bad = {"id": "u2", "emails": [{"value": "b@example.com"}]}  # 缺少 userName
    wrong_type = make_user("u3", "c@example.com", active="yes")

    users = await client_for(lambda r: list_response([make_user("u1", "a@example.com"), bad, wrong_type])).fetch_users(
        ENDPOINT_URL, IDP_TOKEN
    )

    assert isinstance(users[0], SCIMUser)
    assert isinstance(users[1], InvalidResource)
    assert users[1].resource_id == "u2"
    assert "userName" in users[1].error
    assert isinstance(users[2], InvalidResource)


async def test_fetch_groups():
    groups = await client_for(lambda r: list_response([make_group("g1", "Engineering", ["u1"])])).fetch_groups(
        ENDPOINT_URL, IDP_TOKEN
    )
    assert groups[0].displayName == "Engineering"
    assert groups[0].member_ids() == {"u1"}


@pytest.mark.parametrize("status", [401, 403])
async def test_auth_failures(status):
    client = client_for(lambda r: httpx.Response(status, json={"status": str(status), "detail": "denied"}))
    with pytest.raises(AuthenticationError) as exc_info:
        await client.fetch_users(ENDPOINT_URL, IDP_TOKEN)
    assert exc_info.value.error.status == status


async def test_server_error_is_transport_error():
    client = client_for(lambda r: httpx.Response(500, text="internal error"))
    with pytest.raises(TransportError) as exc_info:
        await client.fetch_users(ENDPOINT_URL, IDP_TOKEN)
    assert exc_info.value.error.status == 500
    assert exc_info.value.error.detail == "internal error"


async def test_timeout_is_transport_error():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(TransportError, match="超时"):
        await client_for(handler).fetch_users(ENDPOINT_URL, IDP_TOKEN)


async def test_network_error_is_transport_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransportError):
        await client_for(handler).fetch_users(ENDPOINT_URL, IDP_TOKEN)


async def test_missing_resources_allowed_when_empty():
    client = client_for(lambda r: httpx.Response(200, json={"schemas": [LIST_RESPONSE_SCHEMA], "totalResults": 0}))
    assert await client.fetch_users(ENDPOINT_URL, IDP_TOKEN) == []


async def test_missing_resources_rejected_when_not_empty():
    client = client_for(lambda r: httpx.Response(200, json={"schemas": [LIST_RESPONSE_SCHEMA], "totalResults": 3}))
    with pytest.raises(TransportError):
        await client.fetch_users(ENDPOINT_URL, IDP_TOKEN)


async def test_missing_total_results_uses_resources():
    body = {"schemas": [LIST_RESPONSE_SCHEMA], "Resources": [make_user("u1", "a@example.com")]}
    users = await client_for(lambda r: httpx.Response(200, json=body)).fetch_users(ENDPOINT_URL, IDP_TOKEN)
    assert [u.id for u in users] == ["u1"]


async def test_missing_total_results_and_resources_rejected():
    client = client_for(lambda r: httpx.Response(200, json={"schemas": [LIST_RESPONSE_SCHEMA]}))
    with pytest.raises(TransportError):
        await client.fetch_users(ENDPOINT_URL, IDP_TOKEN)


@pytest.mark.parametrize("body", [b"<html>not json</html>", b"[1, 2, 3]", b'{"Resources": "nope", "totalResults": 1}'])
async def test_malformed_envelope(body):
    client = client_for(lambda r: httpx.Response(200, content=body))
    with pytest.raises(TransportError):
        await client.fetch_users(ENDPOINT_URL, IDP_TOKEN)


async def test_rate_limit_is_retried():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            return httpx.Response(429, headers={"Retry-After": "0"})
        return list_response([])

    assert await client_for(handler).fetch_users(ENDPOINT_URL, IDP_TOKEN) == []
    assert len(calls) == 2


async def test_rate_limit_gives_up():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(429, headers={"Retry-After": "0"})

    with pytest.raises(TransportError):
        await client_for(handler).fetch_users(ENDPOINT_URL, IDP_TOKEN)
    assert len(calls) == 3


async def test_token_never_logged(caplog):
    caplog.set_level(logging.DEBUG, logger="scim_provisioning")
    client = client_for(lambda r: httpx.Response(401, json={"detail": "denied"}))
    with pytest.raises(AuthenticationError):
        await client.fetch_users(ENDPOINT_URL, IDP_TOKEN)
    assert "GET" in caplog.text
    assert IDP_TOKEN not in caplog.text
