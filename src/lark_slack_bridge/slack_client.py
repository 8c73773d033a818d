from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import anyio
import httpx

from .logging import get_logger
from .model import ChannelInfo, RemoteUser, SentMessage

logger = get_logger(__name__)

SLACK_API_BASE = "https://slack.com/api"
CONVERSATION_TYPES = "public_channel,private_channel"
PAGE_LIMIT = 200
MAX_RATE_LIMIT_RETRIES = 3


class SlackApiError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        error: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.error = error
        self.status_code = status_code


@dataclass(frozen=True, slots=True)
class SlackAuth:
    user_id: str
    user_name: str | None = None
    team_id: str | None = None
    bot_id: str | None = None


@dataclass(frozen=True, slots=True)
class SlackPostedMessage:
    channel: str
    ts: str
    thread_ts: str | None

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> "SlackPostedMessage":
        message = payload.get("message")
        message = message if isinstance(message, dict) else {}
        return cls(
            channel=str(payload.get("channel") or message.get("channel") or ""),
            ts=str(payload.get("ts") or message.get("ts") or ""),
            thread_ts=message.get("thread_ts"),
        )


def _channel_from_api(payload: dict[str, Any], workspace_id: str) -> ChannelInfo | None:
    channel_id = payload.get("id")
    name = payload.get("name")
    if not isinstance(channel_id, str) or not isinstance(name, str):
        return None
    return ChannelInfo(
        id=channel_id,
        name=name,
        workspace_id=workspace_id,
        is_shared=bool(
            payload.get("is_shared")
            or payload.get("is_ext_shared")
            or payload.get("is_org_shared")
        ),
        is_archived=bool(payload.get("is_archived")),
    )


def _user_from_api(payload: dict[str, Any]) -> RemoteUser | None:
    user_id = payload.get("id")
    if not isinstance(user_id, str) or not user_id:
        return None
    profile = payload.get("profile")
    profile = profile if isinstance(profile, dict) else {}
    return RemoteUser(
        id=user_id,
        name=payload.get("name") or None,
        display_name=profile.get("display_name") or None,
        real_name=profile.get("real_name") or payload.get("real_name") or None,
        is_bot=bool(payload.get("is_bot")) or user_id == "USLACKBOT",
        is_deleted=bool(payload.get("deleted")),
    )


class SlackClient:
    platform = "slack"

    def __init__(
        self,
        token: str,
        *,
        base_url: str = SLACK_API_BASE,
        timeout_s: float = 30.0,
    ) -> None:
        self._token = token
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": f"Bearer {token}"},
            timeout=timeout_s,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        endpoint: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        token: str | None = None,
    ) -> dict[str, Any]:
        return await _request_with_client(
            self._client,
            method,
            endpoint,
            params=params,
            json=json,
            token=token,
        )

    async def auth_test(self) -> SlackAuth:
        payload = await self._request("POST", "/auth.test")
        user_id = payload.get("user_id")
        if not isinstance(user_id, str) or not user_id:
            raise SlackApiError("Missing user_id in auth.test response")
        user_name = payload.get("user")
        if not isinstance(user_name, str) or not user_name.strip():
            user_name = None
        return SlackAuth(
            user_id=user_id,
            user_name=user_name,
            team_id=payload.get("team_id"),
            bot_id=payload.get("bot_id"),
        )

    async def post_message(
        self,
        *,
        channel_id: str,
        text: str,
        thread_ts: str | None = None,
        token: str | None = None,
    ) -> SlackPostedMessage:
        data: dict[str, Any] = {
            "channel": channel_id,
            "text": text,
            "mrkdwn": True,
        }
        if thread_ts is not None:
            data["thread_ts"] = thread_ts
        if token is not None and token.startswith("xoxp-"):
            # user tokens post as the person, not the app
            data["as_user"] = True
        payload = await self._request("POST", "/chat.postMessage", json=data, token=token)
        posted = SlackPostedMessage.from_api(payload)
        if not posted.ts:
            raise SlackApiError("Slack postMessage missing ts")
        return posted

    async def conversations_list(self) -> list[dict[str, Any]]:
        channels: list[dict[str, Any]] = []
        cursor: str | None = None
        while True:
            params: dict[str, Any] = {
                "types": CONVERSATION_TYPES,
                "exclude_archived": "true",
                "limit": PAGE_LIMIT,
            }
            if cursor:
                params["cursor"] = cursor
            payload = await self._request("GET", "/conversations.list", params=params)
            page = payload.get("channels")
            if isinstance(page, list):
                channels.extend(item for item in page if isinstance(item, dict))
            cursor = _next_cursor(payload)
            if not cursor:
                return channels

    async def conversations_history(
        self,
        channel_id: str,
        *,
        oldest: str | None = None,
        limit: int = 100,
        token: str | None = None,
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"channel": channel_id, "limit": limit}
        if oldest is not None:
            params["oldest"] = oldest
        payload = await self._request(
            "GET", "/conversations.history", params=params, token=token
        )
        messages = payload.get("messages")
        if not isinstance(messages, list):
            return []
        return [item for item in messages if isinstance(item, dict)]

    async def conversations_replies(
        self,
        channel_id: str,
        thread_ts: str,
        *,
        oldest: str | None = None,
        limit: int = 100,
        token: str | None = None,
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"channel": channel_id, "ts": thread_ts, "limit": limit}
        if oldest is not None:
            params["oldest"] = oldest
        payload = await self._request(
            "GET", "/conversations.replies", params=params, token=token
        )
        messages = payload.get("messages")
        if not isinstance(messages, list):
            return []
        return [item for item in messages if isinstance(item, dict)]

    async def users_info(self, user_id: str) -> dict[str, Any] | None:
        payload = await self._request("GET", "/users.info", params={"user": user_id})
        user = payload.get("user")
        return user if isinstance(user, dict) else None

    async def users_list(self) -> list[dict[str, Any]]:
        members: list[dict[str, Any]] = []
        cursor: str | None = None
        while True:
            params: dict[str, Any] = {"limit": PAGE_LIMIT}
            if cursor:
                params["cursor"] = cursor
            payload = await self._request("GET", "/users.list", params=params)
            page = payload.get("members")
            if isinstance(page, list):
                members.extend(item for item in page if isinstance(item, dict))
            cursor = _next_cursor(payload)
            if not cursor:
                return members

    async def send_message(
        self,
        chat_id: str,
        text: str,
        *,
        thread_id: str | None = None,
        credential: str | None = None,
    ) -> SentMessage:
        posted = await self.post_message(
            channel_id=chat_id,
            text=text,
            thread_ts=thread_id,
            token=credential,
        )
        return SentMessage(
            platform="slack",
            chat_id=posted.channel or chat_id,
            message_id=posted.ts,
        )

    async def list_channels(self, workspace_id: str) -> list[ChannelInfo]:
        channels = []
        for raw in await self.conversations_list():
            channel = _channel_from_api(raw, workspace_id)
            if channel is not None:
                channels.append(channel)
        return channels

    async def resolve_user(self, user_id: str) -> RemoteUser | None:
        try:
            raw = await self.users_info(user_id)
        except SlackApiError as exc:
            if exc.error == "user_not_found":
                return None
            raise
        return _user_from_api(raw) if raw is not None else None

    async def list_users(self, workspace_id: str) -> list[RemoteUser]:
        _ = workspace_id
        users = []
        for raw in await self.users_list():
            user = _user_from_api(raw)
            if user is not None:
                users.append(user)
        return users


def _next_cursor(payload: dict[str, Any]) -> str | None:
    metadata = payload.get("response_metadata")
    if not isinstance(metadata, dict):
        return None
    cursor = metadata.get("next_cursor")
    return cursor if isinstance(cursor, str) and cursor else None


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
    attempt = 0
    while True:
        attempt += 1
        try:
            response = await client.request(
                method, endpoint, params=params, json=json, headers=headers
            )
        except httpx.HTTPError as exc:
            logger.warning("slack.network_error", endpoint=endpoint, error=str(exc))
            raise SlackApiError("Slack request failed") from exc

        if response.status_code == 429:
            if attempt > MAX_RATE_LIMIT_RETRIES:
                logger.warning("slack.rate_limit_exhausted", endpoint=endpoint, attempts=attempt)
                raise SlackApiError(
                    "Slack rate limit retries exhausted",
                    error="ratelimited",
                    status_code=429,
                )
            retry_after = response.headers.get("Retry-After")
            try:
                delay = int(retry_after) if retry_after is not None else 1
            except ValueError:
                delay = 1
            logger.info("slack.rate_limited", endpoint=endpoint, retry_after=delay)
            await anyio.sleep(delay)
            continue

        if response.status_code >= 400:
            raise SlackApiError(
                f"Slack HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise SlackApiError("Slack response was not JSON") from exc

        if payload.get("ok") is not True:
            error = payload.get("error")
            raise SlackApiError(
                f"Slack API error: {error}",
                error=error,
                status_code=response.status_code,
            )

        return payload


async def open_socket_url(
    app_token: str,
    *,
    base_url: str = SLACK_API_BASE,
    timeout_s: float = 30.0,
) -> str:
    token = app_token.strip()
    if not token:
        raise SlackApiError("Missing Slack app token")
    async with httpx.AsyncClient(
        base_url=base_url,
        headers={"Authorization": f"Bearer {token}"},
        timeout=timeout_s,
    ) as client:
        payload = await _request_with_client(
            client,
            "POST",
            "/apps.connections.open",
        )
    url = payload.get("url")
    if not isinstance(url, str) or not url.strip():
        raise SlackApiError("Slack socket url missing")
    return url.strip()
