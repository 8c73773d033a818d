"""The relay pipeline.

normalize -> loop guard -> channel filter -> mention decode -> message filter
-> directive -> route -> identity -> mention encode -> dispatch. Each inbound
event produces exactly one :class:`RelayOutcome` and at most one send.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from .channels import ChannelDirectory, MessageFilter
from .config import BridgeSettings
from .directives import parse_directive
from .dispatch import Dispatcher
from .errors import NoRouteAvailable, OutboundSendFailed, UnsupportedEventSchema
from .identity import IdentityResolver, UserDirectory
from .lark_client import LarkClient
from .logging import get_logger
from .loop_guard import LoopGuard
from .mentions import codec_for
from .model import (
    BridgeMessage,
    Challenge,
    NormalizedEvent,
    NotAMessageEvent,
    PlatformClient,
    RelayOutcome,
    other_platform,
)
from .normalize import LarkNormalizer, SlackNormalizer
from .router import Router
from .slack_client import SlackClient
from .store import JsonFileStore, KeyValueStore, MemoryStore, UserLinkStore

logger = get_logger(__name__)


class Normalizer(Protocol):
    platform: str

    async def normalize(self, raw: object) -> NormalizedEvent: ...


@dataclass(slots=True)
class Bridge:
    normalizers: Mapping[str, Normalizer]
    loop_guard: LoopGuard
    router: Router
    identity: IdentityResolver
    dispatcher: Dispatcher
    directories: Mapping[str, ChannelDirectory] = field(default_factory=dict)
    users: Mapping[str, UserDirectory] = field(default_factory=dict)
    message_filters: Mapping[str, MessageFilter] = field(default_factory=dict)
    clients: Mapping[str, Any] = field(default_factory=dict)

    async def handle_slack_payload(self, payload: object) -> RelayOutcome:
        return await self.handle("slack", payload)

    async def handle_lark_payload(self, payload: object) -> RelayOutcome:
        return await self.handle("lark", payload)

    async def handle(self, platform: str, payload: object) -> RelayOutcome:
        normalizer = self.normalizers[platform]
        try:
            event = await normalizer.normalize(payload)
        except UnsupportedEventSchema as exc:
            logger.info("bridge.unsupported_schema", platform=platform, error=str(exc))
            return RelayOutcome(status="ignored", detail=str(exc))
        if isinstance(event, Challenge):
            return RelayOutcome(status="challenge", challenge=event.value)
        if isinstance(event, NotAMessageEvent):
            logger.debug("bridge.not_a_message", platform=platform, reason=event.reason)
            return RelayOutcome(status="ignored", detail=event.reason)
        if event.event_id and not self.loop_guard.first_delivery(platform, event.event_id):
            logger.info("bridge.redelivery_ignored", platform=platform, event_id=event.event_id)
            return RelayOutcome(status="ignored", detail="duplicate delivery")
        return await self.relay(event)

    async def relay(self, message: BridgeMessage) -> RelayOutcome:
        source = message.source_platform
        target = other_platform(source)

        if self.loop_guard.check(message) == "drop":
            return RelayOutcome(status="dropped", detail="sent by the bridge or a bot")

        directory = self.directories.get(source)
        if directory is not None:
            await directory.load()
            if not directory.should_process(message.source_chat_id):
                logger.debug(
                    "bridge.channel_filtered",
                    platform=source,
                    chat_id=message.source_chat_id,
                )
                return RelayOutcome(status="dropped", detail="channel filtered")

        text = codec_for(source).decode(message.raw_text, message.mentions)
        if not text.strip():
            return RelayOutcome(status="ignored", detail="empty after mention cleanup")

        message_filter = self.message_filters.get(source)
        if message_filter is not None and not message_filter.allows(message, text):
            logger.debug(
                "bridge.message_filtered",
                platform=source,
                chat_id=message.source_chat_id,
                sender_id=message.sender_id,
            )
            return RelayOutcome(status="dropped", detail="message filtered")

        directive = parse_directive(text)
        link = await self.identity.link_for(message)
        try:
            route = await self.router.route(message, directive, link)
        except NoRouteAvailable as exc:
            return RelayOutcome(status="no_route", detail=str(exc))

        send_as = await self.identity.resolve(message, target, link=link)
        target_users = self.users.get(target)
        index = await target_users.index() if target_users is not None else {}
        body = directive.message_text if route.consumes_directive else directive.full_text
        outbound = codec_for(target).encode(body, index)

        try:
            sent = await self.dispatcher.dispatch(target, route, outbound, send_as)
        except OutboundSendFailed as exc:
            return RelayOutcome(status="send_failed", detail=str(exc))
        return RelayOutcome(status="forwarded", sent=sent)

    async def aclose(self) -> None:
        for client in self.clients.values():
            close = getattr(client, "close", None)
            if close is not None:
                await close()


def open_store(settings: BridgeSettings) -> KeyValueStore:
    if settings.store.backend == "memory" or settings.store.path is None:
        return MemoryStore()
    return JsonFileStore(settings.store.path)


def build_bridge(
    settings: BridgeSettings,
    *,
    store: KeyValueStore | None = None,
    slack_client: PlatformClient | None = None,
    lark_client: PlatformClient | None = None,
) -> Bridge:
    cache = settings.cache
    if slack_client is None:
        slack_client = SlackClient(
            settings.slack.bot_token,
            base_url=settings.slack.base_url,
            timeout_s=settings.slack.timeout_s,
        )
    if lark_client is None:
        lark_client = LarkClient(
            settings.lark.app_id,
            settings.lark.app_secret,
            base_url=settings.lark.base_url,
            timeout_s=settings.lark.timeout_s,
            token_ttl_s=cache.token_ttl_s,
            user_department_id=settings.lark.user_department_id,
        )
    if store is None:
        store = open_store(settings)

    workspaces = {"slack": settings.slack.team_id, "lark": settings.lark.tenant_key}
    clients: dict[str, PlatformClient] = {"slack": slack_client, "lark": lark_client}
    directories = {
        platform: ChannelDirectory(
            client,
            workspace_id=workspaces[platform],
            channel_filter=settings.filters_for(platform).channels,
            ttl_s=cache.channel_ttl_s,
            timeout_s=cache.lookup_timeout_s,
        )
        for platform, client in clients.items()
    }
    users = {
        platform: UserDirectory(
            client,
            workspace_id=workspaces[platform],
            ttl_s=cache.user_ttl_s,
            timeout_s=cache.lookup_timeout_s,
        )
        for platform, client in clients.items()
    }
    loop_guard = LoopGuard(
        ledger_ttl_s=cache.ledger_ttl_s,
        delivery_ttl_s=cache.delivery_ttl_s,
    )
    router = Router(
        directories=directories,
        defaults={
            platform: settings.default_destination(platform) for platform in clients
        },
        mappings=settings.channel_mappings,
        store=store,
    )
    return Bridge(
        normalizers={
            "slack": SlackNormalizer(
                verification_token=settings.slack.verification_token,
                users=users["slack"],
            ),
            "lark": LarkNormalizer(
                verification_token=settings.lark.verification_token,
                users=users["lark"],
            ),
        },
        loop_guard=loop_guard,
        router=router,
        identity=IdentityResolver(
            UserLinkStore(store),
            ttl_s=cache.link_ttl_s,
            timeout_s=cache.lookup_timeout_s,
        ),
        dispatcher=Dispatcher(
            clients,
            loop_guard=loop_guard,
            timeout_s=cache.send_timeout_s,
        ),
        directories=directories,
        users=users,
        message_filters={
            platform: settings.filters_for(platform).messages for platform in clients
        },
        clients=clients,
    )
