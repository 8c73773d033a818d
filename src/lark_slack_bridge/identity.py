from __future__ import annotations

import time

from .cache import Clock, TTLCache
from .logging import get_logger
from .mentions import build_user_index
from .model import (
    PLATFORM_LABELS,
    BridgeMessage,
    DefaultIdentity,
    LinkedIdentity,
    PlatformClient,
    RemoteUser,
    SendAs,
    UserLink,
)
from .store import UserLinkStore

logger = get_logger(__name__)

DEFAULT_USER_TTL_S = 300.0
DEFAULT_LINK_TTL_S = 60.0


def default_prefix(message: BridgeMessage) -> str:
    label = PLATFORM_LABELS.get(message.source_platform, message.source_platform)
    name = message.sender_display_name or message.sender_id or "Unknown"
    return f"[{label}: {name}]"


class UserDirectory:
    """Per-platform user name lookups and the name -> id index used for mentions."""

    def __init__(
        self,
        client: PlatformClient,
        *,
        workspace_id: str = "",
        ttl_s: float = DEFAULT_USER_TTL_S,
        timeout_s: float | None = 5.0,
        clock: Clock = time.monotonic,
    ) -> None:
        self.platform = client.platform
        self.workspace_id = workspace_id
        self._client = client
        self._users: TTLCache[str, RemoteUser | None] = TTLCache(
            f"{self.platform}.users",
            client.resolve_user,
            ttl_s=ttl_s,
            timeout_s=timeout_s,
            clock=clock,
        )
        self._index: TTLCache[str, dict[str, str]] = TTLCache(
            f"{self.platform}.user_index",
            self._fetch_index,
            ttl_s=ttl_s,
            timeout_s=timeout_s,
            clock=clock,
        )

    async def _fetch_index(self, workspace_id: str) -> dict[str, str]:
        return build_user_index(await self._client.list_users(workspace_id))

    async def lookup(self, user_id: str) -> RemoteUser | None:
        try:
            return await self._users.get(user_id)
        except Exception as exc:  # noqa: BLE001
            logger.info(
                "users.lookup_failed",
                platform=self.platform,
                user_id=user_id,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            return None

    async def display_name(self, user_id: str) -> str | None:
        user = await self.lookup(user_id)
        return user.best_name if user is not None else None

    async def index(self, workspace_id: str | None = None) -> dict[str, str]:
        workspace = self.workspace_id if workspace_id is None else workspace_id
        try:
            return await self._index.get(workspace)
        except Exception as exc:  # noqa: BLE001
            stale = self._index.peek(workspace, allow_stale=True)
            logger.info(
                "users.index_failed",
                platform=self.platform,
                workspace_id=workspace,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            return stale if stale is not None else {}


class IdentityResolver:
    def __init__(
        self,
        links: UserLinkStore,
        *,
        ttl_s: float = DEFAULT_LINK_TTL_S,
        timeout_s: float | None = 5.0,
        clock: Clock = time.monotonic,
    ) -> None:
        self._links = links
        self._cache: TTLCache[tuple[str, str], UserLink | None] = TTLCache(
            "links",
            self._fetch_link,
            ttl_s=ttl_s,
            timeout_s=timeout_s,
            clock=clock,
        )

    async def _fetch_link(self, key: tuple[str, str]) -> UserLink | None:
        platform, user_id = key
        return await self._links.get(platform, user_id)

    async def link_for(self, message: BridgeMessage) -> UserLink | None:
        try:
            return await self._cache.get((message.source_platform, message.sender_id))
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "identity.link_lookup_failed",
                platform=message.source_platform,
                sender_id=message.sender_id,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            return None

    def forget(self, platform: str, user_id: str) -> None:
        self._cache.invalidate((platform, user_id))

    async def resolve(
        self,
        message: BridgeMessage,
        target_platform: str,
        *,
        link: UserLink | None = None,
    ) -> SendAs:
        if link is None:
            link = await self.link_for(message)
        if link is not None and link.platform_b_credential:
            logger.debug(
                "identity.linked",
                source_platform=message.source_platform,
                target_platform=target_platform,
                sender_id=message.sender_id,
            )
            return LinkedIdentity(
                credential=link.platform_b_credential,
                display_name=link.display_name or message.sender_display_name,
            )
        return DefaultIdentity(display_prefix=default_prefix(message))
