from __future__ import annotations

import json

import httpx
import pytest

from lark_slack_bridge.lark_client import LarkApiError, LarkClient, _request_with_client


def _client(handler) -> LarkClient:
    client = LarkClient("cli_1", "secret", base_url="https://example.com")
    client._client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="https://example.com"
    )
    return client


def _token_response(request: httpx.Request, token: str = "t-tenant") -> httpx.Response:
    assert json.loads(request.content) == {"app_id": "cli_1", "app_secret": "secret"}
    return httpx.Response(
        200,
        request=request,
        json={"code": 0, "tenant_access_token": token, "expire": 7200},
    )


@pytest.mark.anyio
async def test_request_with_client_raises_on_error_code() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, request=request, json={"code": 230002, "msg": "bot not in chat"})

    async with httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="https://example.com"
    ) as client:
        with pytest.raises(LarkApiError) as exc:
            await _request_with_client(client, "POST", "/im/v1/messages")

    assert exc.value.code == 230002
    assert "bot not in chat" in str(exc.value)


@pytest.mark.anyio
async def test_request_with_client_rejects_non_json() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, request=request, content=b"<html>")

    async with httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="https://example.com"
    ) as client:
        with pytest.raises(LarkApiError) as exc:
            await _request_with_client(client, "GET", "/x")

    assert exc.value.status_code == 502


@pytest.mark.anyio
async def test_send_message_uses_cached_tenant_token() -> None:
    token_calls = 0
    sends: list[tuple[str, dict, str | None]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal token_calls
        if request.url.path == "/auth/v3/tenant_access_token/internal":
            token_calls += 1
            return _token_response(request)
        assert request.url.params.get("receive_id_type") == "chat_id"
        body = json.loads(request.content)
        sends.append((request.url.path, body, request.headers.get("Authorization")))
        return httpx.Response(
            200,
            request=request,
            json={"code": 0, "data": {"message_id": f"om_{len(sends)}", "chat_id": "oc_1"}},
        )

    client = _client(handler)
    first = await client.send_message("oc_1", "hello [Slack: Ann]")
    second = await client.send_message("oc_1", "again")
    await client.close()

    assert token_calls == 1
    assert first.platform == "lark"
    assert first.message_id == "om_1"
    assert second.message_id == "om_2"
    path, body, auth = sends[0]
    assert path == "/im/v1/messages"
    assert auth == "Bearer t-tenant"
    assert body["receive_id"] == "oc_1"
    assert body["msg_type"] == "text"
    assert json.loads(body["content"]) == {"text": "hello [Slack: Ann]"}


@pytest.mark.anyio
async def test_thread_reply_with_personal_credential() -> None:
    seen: list[tuple[str, str | None]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.startswith("/auth/"):
            raise AssertionError("tenant token must not be fetched")
        seen.append((request.url.path, request.headers.get("Authorization")))
        return httpx.Response(
            200, request=request, json={"code": 0, "data": {"message_id": "om_r"}}
        )

    client = _client(handler)
    sent = await client.send_message("oc_1", "reply", thread_id="om_root", credential="u-ann")
    await client.close()

    assert seen == [("/im/v1/messages/om_root/reply", "Bearer u-ann")]
    assert sent.chat_id == "oc_1"


@pytest.mark.anyio
async def test_expired_tenant_token_is_refreshed_once() -> None:
    tokens = iter(["t-old", "t-new"])
    auth_seen: list[str | None] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/auth/v3/tenant_access_token/internal":
            return _token_response(request, next(tokens))
        auth = request.headers.get("Authorization")
        auth_seen.append(auth)
        if auth == "Bearer t-old":
            return httpx.Response(
                200, request=request, json={"code": 99991663, "msg": "token invalid"}
            )
        return httpx.Response(
            200, request=request, json={"code": 0, "data": {"user": {"open_id": "ou_1", "name": "Ann"}}}
        )

    client = _client(handler)
    user = await client.resolve_user("ou_1")
    await client.close()

    assert user is not None
    assert user.best_name == "Ann"
    assert auth_seen == ["Bearer t-old", "Bearer t-new"]


@pytest.mark.anyio
async def test_list_channels_paginates() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.startswith("/auth/"):
            return _token_response(request)
        assert request.url.path == "/im/v1/chats"
        assert request.url.params.get("page_size") == "50"
        if request.url.params.get("page_token") is None:
            data = {
                "items": [{"chat_id": "oc_1", "name": "eng"}],
                "has_more": True,
                "page_token": "p2",
            }
        else:
            data = {
                "items": [
                    {"chat_id": "oc_2", "name": "partners", "external": True},
                    {"chat_id": "oc_3", "name": "old", "chat_status": "dissolved"},
                ],
                "has_more": False,
            }
        return httpx.Response(200, request=request, json={"code": 0, "data": data})

    client = _client(handler)
    chats = await client.list_channels("tenant_1")
    await client.close()

    assert [chat.id for chat in chats] == ["oc_1", "oc_2", "oc_3"]
    assert chats[1].is_shared
    assert chats[2].is_archived
    assert chats[0].workspace_id == "tenant_1"


@pytest.mark.anyio
async def test_list_users_reads_department() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.startswith("/auth/"):
            return _token_response(request)
        assert request.url.path == "/contact/v3/users/find_by_department"
        assert request.url.params.get("department_id") == "0"
        return httpx.Response(
            200,
            request=request,
            json={
                "code": 0,
                "data": {
                    "items": [
                        {"open_id": "ou_1", "name": "田中", "en_name": "Tanaka"},
                        {"open_id": "ou_2", "name": "Gone", "status": {"is_resigned": True}},
                    ],
                    "has_more": False,
                },
            },
        )

    client = _client(handler)
    users = await client.list_users("")
    await client.close()

    assert users[0].display_name == "田中"
    assert users[0].name == "Tanaka"
    assert users[1].is_deleted


@pytest.mark.anyio
async def test_send_without_message_id_fails() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.startswith("/auth/"):
            return _token_response(request)
        return httpx.Response(200, request=request, json={"code": 0, "data": {}})

    client = _client(handler)
    with pytest.raises(LarkApiError):
        await client.send_message("oc_1", "hi")
    await client.close()
