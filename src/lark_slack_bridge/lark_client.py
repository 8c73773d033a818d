from __future__ import annotations

import json
from typing import Any

import httpx

from .cache import TTLCache
from .logging import get_logger
from .model import ChannelInfo, RemoteUser, SentMessage

logger = get_logger(__name__)

LARK_API_BASE = "https://open.larksuite.com/open-apis"
PAGE_SIZE = 50
# tenant_access_token invalid or expired
TOKEN_ERROR_CODES = frozenset({99991661, 99991663, 99991668})


class LarkApiError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        code: int | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.status_code = status_code


def _chat_from_api(payload: dict[str, Any], workspace_id: str) -> ChannelInfo | None:
    chat_id = payload.get("chat_id")
    if not isinstance(chat_id, str) or not chat_id:
        return None
    name = payload.get("name")
    return ChannelInfo(
        id=chat_id,
        name=name if isinstance(name, str) else "",
        workspace_id=workspace_id or str(payload.get("tenant_key") or ""),
        is_shared=bool(payload.get("external")),
        is_archived=payload.get("chat_status") in {"dissolved", "dissolved_save"},
    )


def _user_from_api(payload: dict[str, Any]) -> RemoteUser | None:
    user_id = payload.get("open_id") or payload.get("user_id")
    if not isinstance(user_id, str) or not user_id:
        return None
    status = payload.get("status")
    status = status if isinstance(status, dict) else {}
    return RemoteUser(
        id=user_id,
        name=payload.get("en_name") or None,
        display_name=payload.get("nickname") or payload.get("name") or None,
        real_name=payload.get("name") or None,
        is_deleted=bool(status.get("is_resigned")),
    )


class LarkClient:
    platform = "lark"

    def __init__(
        self,
        app_id: str,
        app_secret: str,
        *,
        base_url: str = LARK_API_BASE,
        timeout_s: float = 30.0,
        token_ttl_s: float = 5400.0,
        user_department_id: str = "0",
    ) -> None:
        self._app_id = app_id
        self._app_secret = app_secret
        self._department_id = user_department_id
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout_s)
        self._tokens: TTLCache[str, str] = TTLCache(
            "lark.tenant_token",
            self._fetch_tenant_token,
            ttl_s=token_ttl_s,
            timeout_s=timeout_s,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _fetch_tenant_token(self, app_id: str) -> str:
        payload = await _request_with_client(
            self._client,
            "POST",
            "/auth/v3/tenant_access_token/internal",
            json={"app_id": app_id, "app_secret": self._app_secret},
        )
        token = payload.get("tenant_access_token")
        if not isinstance(token, str) or not token:
            raise LarkApiError("Lark tenant_access_token missing")
        return token

    async def tenant_token(self) -> str:
        return await self._tokens.get(self._app_id)

    async def _request(
        self,
        method: str,
        endpoint: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        credential: str | None = None,
    ) -> dict[str, Any]:
        token = credential or await self.tenant_token()
        try:
            return await _request_with_client(
                self._client, method, endpoint, params=params, json=json, token=token
            )
        except LarkApiError as exc:
            if credential is not None or exc.code not in TOKEN_ERROR_CODES:
                raise
            logger.info("lark.tenant_token_refresh", code=exc.code)
            self._tokens.invalidate(self._app_id)
            token = await self.tenant_token()
            return await _request_with_client(
                self._client, method, endpoint, params=params, json=json, token=token
            )

    async def send_text(
        self,
        *,
        chat_id: str,
        text: str,
        reply_to: str | None = None,
        credential: str | None = None,
    ) -> dict[str, Any]:
        content = json.dumps({"text": text}, ensure_ascii=False)
        if reply_to is not None:
            payload = await self._request(
                "POST",
                f"/im/v1/messages/{reply_to}/reply",
                json={"msg_type": "text", "content": content},
                credential=credential,
            )
        else:
            payload = await self._request(
                "POST",
                "/im/v1/messages",
                params={"receive_id_type": "chat_id"},
                json={"receive_id": chat_id, "msg_type": "text", "content": content},
                credential=credential,
            )
        data = payload.get("data")
        return data if isinstance(data, dict) else {}

    async def list_chats(self) -> list[dict[str, Any]]:
        return await self._paginate("/im/v1/chats", params={})

    async def get_user(self, user_id: str) -> dict[str, Any] | None:
        payload = await self._request(
            "GET",
            f"/contact/v3/users/{user_id}",
            params={"user_id_type": "open_id"},
        )
        data = payload.get("data")
        user = data.get("user") if isinstance(data, dict) else None
        return user if isinstance(user, dict) else None

    async def list_department_users(self) -> list[dict[str, Any]]:
        return await self._paginate(
            "/contact/v3/users/find_by_department",
            params={"department_id": self._department_id, "user_id_type": "open_id"},
        )

    async def _paginate(self, endpoint: str, *, params: dict[str, Any]) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        page_token: str | None = None
        while True:
            page_params = dict(params, page_size=PAGE_SIZE)
            if page_token:
                page_params["page_token"] = page_token
            payload = await self._request("GET", endpoint, params=page_params)
            data = payload.get("data")
            data = data if isinstance(data, dict) else {}
            page = data.get("items")
            if isinstance(page, list):
                items.extend(item for item in page if isinstance(item, dict))
            page_token = data.get("page_token")
            if not data.get("has_more") or not page_token:
                return items

    async def send_message(
        self,
        chat_id: str,
        text: str,
        *,
        thread_id: str | None = None,
        credential: str | None = None,
    ) -> SentMessage:
        data = await self.send_text(
            chat_id=chat_id,
            text=text,
            reply_to=thread_id,
            credential=credential,
        )
        message_id = data.get("message_id")
        if not isinstance(message_id, str) or not message_id:
            raise LarkApiError("Lark send missing message_id")
        return SentMessage(
            platform="lark",
            chat_id=str(data.get("chat_id") or chat_id),
            message_id=message_id,
        )

    async def list_channels(self, workspace_id: str) -> list[ChannelInfo]:
        chats = []
        for raw in await self.list_chats():
            chat = _chat_from_api(raw, workspace_id)
            if chat is not None:
                chats.append(chat)
        return chats

    async def resolve_user(self, user_id: str) -> RemoteUser | None:
        raw = await self.get_user(user_id)
        return _user_from_api(raw) if raw is not None else None

    async def list_users(self, workspace_id: str) -> list[RemoteUser]:
        _ = workspace_id
        users = []
        for raw in await self.list_department_users():
            user = _user_from_api(raw)
            if user is not None:
                users.append(user)
        return users


async def _request_with_client(
    client: httpx.AsyncClient,
    method: str,
    endpoint: str,
    *,
    params: dict[str, Any] | None = None,
    json: dict[str, Any] | None = None,
    token: str | None = None,
) -> dict[str, Any]:
    headers = {"Authorization": f"Bearer {token}"} if token else None
    try:
        response = await client.request(
            method, endpoint, params=params, json=json, headers=headers
        )
    except httpx.HTTPError as exc:
        logger.warning("lark.network_error", endpoint=endpoint, error=str(exc))
        raise LarkApiError("Lark request failed") from exc

    try:
        payload = response.json()
    except ValueError as exc:
        raise LarkApiError(
            f"Lark HTTP {response.status_code}: response was not JSON",
            status_code=response.status_code,
        ) from exc
    if not isinstance(payload, dict):
        raise LarkApiError("Lark response was not an object", status_code=response.status_code)

    code = payload.get("code")
    if response.status_code >= 400 or code != 0:
        raise LarkApiError(
            f"Lark API error {code}: {payload.get('msg')}",
            code=code if isinstance(code, int) else None,
            status_code=response.status_code,
        )
    return payload
