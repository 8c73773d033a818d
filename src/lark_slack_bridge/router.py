from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import NoReturn

from .channels import ChannelDirectory
from .directives import Directive
from .errors import NoRouteAvailable
from .logging import get_logger
from .model import BridgeMessage, ChannelMapping, Route, UserLink, other_platform
from .store import KeyValueStore, load_channel_mappings

logger = get_logger(__name__)


def unresolved_notice(channel: str) -> str:
    return f"[Channel #{channel.lstrip('#')} not found; sent to the default channel]"


@dataclass(frozen=True, slots=True)
class MappingTable:
    mappings: tuple[ChannelMapping, ...] = ()

    def target_for(self, platform: str, channel_id: str) -> str | None:
        for mapping in self.mappings:
            target = mapping.target_for(platform, channel_id)  # type: ignore[arg-type]
            if target is not None:
                return target
        return None


class Router:
    def __init__(
        self,
        *,
        directories: Mapping[str, ChannelDirectory],
        defaults: Mapping[str, str | None],
        mappings: Iterable[ChannelMapping] = (),
        store: KeyValueStore | None = None,
    ) -> None:
        self._directories = dict(directories)
        self._defaults = dict(defaults)
        self._configured = tuple(mappings)
        self._store = store
        self._table = MappingTable(self._configured)

    @property
    def table(self) -> MappingTable:
        return self._table

    async def reload(self) -> MappingTable:
        stored: tuple[ChannelMapping, ...] = ()
        if self._store is not None:
            stored = await load_channel_mappings(self._store)
        table = MappingTable(self._configured + stored)
        self._table = table
        logger.info(
            "router.reloaded",
            configured=len(self._configured),
            stored=len(stored),
        )
        return table

    async def route(
        self,
        message: BridgeMessage,
        directive: Directive,
        link: UserLink | None = None,
    ) -> Route:
        target_platform = other_platform(message.source_platform)
        table = self._table

        if directive.target_channel is not None:
            resolved = await self._resolve_directive(target_platform, directive.target_channel)
            if resolved is not None:
                return Route(
                    destination_chat_id=resolved,
                    destination_thread_id=directive.target_thread,
                    source="directive",
                    consumes_directive=True,
                )
            if directive.kind == "channel_id":
                # an unknown all-caps leading word is plain text, not a directive
                logger.debug(
                    "router.directive_ignored",
                    target_platform=target_platform,
                    channel=directive.target_channel,
                )
            else:
                return self._directive_fallback(message, directive, target_platform, link)

        mapped = table.target_for(message.source_platform, message.source_chat_id)
        if mapped is not None:
            return Route(destination_chat_id=mapped, source="mapping")

        if link is not None and link.default_channel:
            return Route(destination_chat_id=link.default_channel, source="link")

        default = self._defaults.get(target_platform)
        if default:
            return Route(destination_chat_id=default, source="default")

        self._no_route(message)

    def _directive_fallback(
        self,
        message: BridgeMessage,
        directive: Directive,
        target_platform: str,
        link: UserLink | None,
    ) -> Route:
        channel = directive.target_channel or ""
        fallback = self._fallback(target_platform, link)
        logger.info(
            "router.directive_unresolved",
            target_platform=target_platform,
            channel=channel,
            fallback=fallback,
        )
        if fallback is None:
            self._no_route(message)
        return Route(
            destination_chat_id=fallback,
            source="default",
            notice=unresolved_notice(channel),
            consumes_directive=True,
        )

    def _fallback(self, target_platform: str, link: UserLink | None) -> str | None:
        if link is not None and link.default_channel:
            return link.default_channel
        return self._defaults.get(target_platform) or None

    async def _resolve_directive(self, target_platform: str, channel: str) -> str | None:
        directory = self._directories.get(target_platform)
        if directory is None:
            return None
        await directory.load()
        return directory.resolve(channel)

    def _no_route(self, message: BridgeMessage) -> NoReturn:
        logger.warning(
            "router.no_route",
            source_platform=message.source_platform,
            chat_id=message.source_chat_id,
            sender_id=message.sender_id,
        )
        raise NoRouteAvailable(
            source_platform=message.source_platform,
            chat_id=message.source_chat_id,
        )
