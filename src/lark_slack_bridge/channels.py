"""Channel directory and inbound filters.

The directory keeps the last successfully loaded channel list per workspace,
so an upstream failure leaves stale-but-usable data rather than nothing.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass

from .cache import Clock, TTLCache
from .logging import get_logger
from .model import BridgeMessage, ChannelInfo, PlatformClient

logger = get_logger(__name__)

DEFAULT_CHANNEL_TTL_S = 300.0


def _normalize_name(name: str) -> str:
    return name.strip().lstrip("#").lower()


@dataclass(frozen=True, slots=True)
class ChannelFilter:
    exclude_ids: frozenset[str] = frozenset()
    include_ids: frozenset[str] = frozenset()
    include_names: frozenset[str] = frozenset()
    include_shared: bool = False

    @classmethod
    def build(
        cls,
        *,
        exclude_ids: Iterable[str] = (),
        include_ids: Iterable[str] = (),
        include_names: Iterable[str] = (),
        include_shared: bool = False,
    ) -> "ChannelFilter":
        return cls(
            exclude_ids=frozenset(exclude_ids),
            include_ids=frozenset(include_ids),
            include_names=frozenset(_normalize_name(name) for name in include_names),
            include_shared=include_shared,
        )

    def allows(self, channel_id: str, info: ChannelInfo | None) -> bool:
        if channel_id in self.exclude_ids:
            return False
        if self.include_ids:
            return channel_id in self.include_ids
        if self.include_names and info is not None:
            return _normalize_name(info.name) in self.include_names
        if info is not None and info.is_shared:
            return self.include_shared
        return True


@dataclass(frozen=True, slots=True)
class MessageFilter:
    exclude_user_ids: frozenset[str] = frozenset()
    include_user_ids: frozenset[str] = frozenset()
    include_patterns: tuple[re.Pattern[str], ...] = ()
    exclude_patterns: tuple[re.Pattern[str], ...] = ()

    @classmethod
    def build(
        cls,
        *,
        exclude_user_ids: Iterable[str] = (),
        include_user_ids: Iterable[str] = (),
        include_patterns: Iterable[str] = (),
        exclude_patterns: Iterable[str] = (),
    ) -> "MessageFilter":
        return cls(
            exclude_user_ids=frozenset(exclude_user_ids),
            include_user_ids=frozenset(include_user_ids),
            include_patterns=tuple(re.compile(p) for p in include_patterns),
            exclude_patterns=tuple(re.compile(p) for p in exclude_patterns),
        )

    def allows(self, message: BridgeMessage, text: str) -> bool:
        if message.sender_id in self.exclude_user_ids:
            return False
        if self.include_user_ids and message.sender_id not in self.include_user_ids:
            return False
        if self.include_patterns and not any(
            pattern.search(text) for pattern in self.include_patterns
        ):
            return False
        return not any(pattern.search(text) for pattern in self.exclude_patterns)


class ChannelDirectory:
    def __init__(
        self,
        client: PlatformClient,
        *,
        workspace_id: str = "",
        channel_filter: ChannelFilter | None = None,
        ttl_s: float = DEFAULT_CHANNEL_TTL_S,
        timeout_s: float | None = 10.0,
        clock: Clock | None = None,
    ) -> None:
        self.platform = client.platform
        self.workspace_id = workspace_id
        self.filter = channel_filter or ChannelFilter()
        cache_kwargs = {"clock": clock} if clock is not None else {}
        self._cache: TTLCache[str, list[ChannelInfo]] = TTLCache(
            f"{self.platform}.channels",
            client.list_channels,
            ttl_s=ttl_s,
            timeout_s=timeout_s,
            **cache_kwargs,
        )
        self._snapshots: dict[str, tuple[list[ChannelInfo], dict[str, ChannelInfo]]] = {}

    async def load(self, workspace_id: str | None = None) -> list[ChannelInfo]:
        workspace = self.workspace_id if workspace_id is None else workspace_id
        try:
            channels = await self._cache.get(workspace)
        except Exception as exc:  # noqa: BLE001
            stale = self._cache.peek(workspace, allow_stale=True)
            logger.warning(
                "channels.load_failed",
                platform=self.platform,
                workspace_id=workspace,
                error=str(exc),
                error_type=exc.__class__.__name__,
                kept=len(stale) if stale is not None else 0,
            )
            return list(stale) if stale is not None else []
        snapshot = self._snapshots.get(workspace)
        if snapshot is None or snapshot[0] is not channels:
            self._snapshots[workspace] = (channels, {channel.id: channel for channel in channels})
            logger.debug(
                "channels.loaded",
                platform=self.platform,
                workspace_id=workspace,
                count=len(channels),
            )
        return list(channels)

    def _channels(self, workspace_id: str | None) -> dict[str, ChannelInfo]:
        workspace = self.workspace_id if workspace_id is None else workspace_id
        snapshot = self._snapshots.get(workspace)
        return snapshot[1] if snapshot is not None else {}

    def get(self, channel_id: str, workspace_id: str | None = None) -> ChannelInfo | None:
        return self._channels(workspace_id).get(channel_id)

    def should_process(self, channel_id: str, workspace_id: str | None = None) -> bool:
        return self.filter.allows(channel_id, self.get(channel_id, workspace_id))

    def resolve(self, name_or_id: str, workspace_id: str | None = None) -> str | None:
        token = name_or_id.strip()
        if not token:
            return None
        channels = self._channels(workspace_id)
        if token in channels:
            return token
        wanted = _normalize_name(token)
        for channel in channels.values():
            if channel.is_archived:
                continue
            if channel.name.lower() == wanted:
                return channel.id
        return None
