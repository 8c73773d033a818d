"""Bridge domain model types (canonical messages, mentions, routing, identities)."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Protocol, TypeAlias

Platform: TypeAlias = Literal["slack", "lark"]

PLATFORM_LABELS: dict[str, str] = {"slack": "Slack", "lark": "Lark"}


def other_platform(platform: Platform) -> Platform:
    return "lark" if platform == "slack" else "slack"


@dataclass(frozen=True, slots=True)
class MentionRef:
    raw_token: str
    resolved_user_id: str | None = None
    resolved_display_name: str | None = None
    is_automated_account: bool = False


@dataclass(frozen=True, slots=True)
class BridgeMessage:
    source_platform: Platform
    source_chat_id: str
    sender_id: str
    raw_text: str
    timestamp: float
    sender_is_automated: bool = False
    source_thread_id: str | None = None
    sender_display_name: str | None = None
    mentions: tuple[MentionRef, ...] = ()
    message_id: str | None = None
    source_chat_name: str | None = None
    # platform delivery id, stable across redeliveries of one event
    event_id: str | None = None


@dataclass(frozen=True, slots=True)
class Challenge:
    value: str


@dataclass(frozen=True, slots=True)
class NotAMessageEvent:
    reason: str


NormalizedEvent: TypeAlias = BridgeMessage | Challenge | NotAMessageEvent


@dataclass(frozen=True, slots=True)
class ChannelMapping:
    source_platform: Platform
    source_channel_id: str
    target_platform: Platform
    target_channel_id: str
    bidirectional: bool = True

    def target_for(self, platform: Platform, channel_id: str) -> str | None:
        if self.source_platform == platform and self.source_channel_id == channel_id:
            return self.target_channel_id
        if (
            self.bidirectional
            and self.target_platform == platform
            and self.target_channel_id == channel_id
        ):
            return self.source_channel_id
        return None


@dataclass(frozen=True, slots=True)
class ChannelInfo:
    id: str
    name: str
    workspace_id: str
    is_shared: bool = False
    is_archived: bool = False


@dataclass(frozen=True, slots=True)
class RemoteUser:
    id: str
    name: str | None = None
    display_name: str | None = None
    real_name: str | None = None
    is_bot: bool = False
    is_deleted: bool = False

    @property
    def best_name(self) -> str | None:
        return self.display_name or self.real_name or self.name


@dataclass(frozen=True, slots=True)
class UserLink:
    source_platform: Platform
    platform_a_id: str
    platform_b_id: str
    platform_b_credential: str
    display_name: str | None = None
    default_channel: str | None = None


@dataclass(frozen=True, slots=True)
class LinkedIdentity:
    credential: str
    display_name: str | None = None
    kind: Literal["linked"] = "linked"


@dataclass(frozen=True, slots=True)
class DefaultIdentity:
    display_prefix: str
    kind: Literal["default"] = "default"


SendAs: TypeAlias = LinkedIdentity | DefaultIdentity

RouteSource: TypeAlias = Literal["directive", "mapping", "link", "default"]


@dataclass(frozen=True, slots=True)
class Route:
    destination_chat_id: str
    source: RouteSource
    destination_thread_id: str | None = None
    notice: str | None = None
    # the directive prefix is stripped from the forwarded text
    consumes_directive: bool = False


@dataclass(frozen=True, slots=True)
class SentMessage:
    platform: Platform
    chat_id: str
    message_id: str | None = None


OutcomeStatus: TypeAlias = Literal[
    "challenge",
    "ignored",
    "dropped",
    "forwarded",
    "no_route",
    "send_failed",
]


@dataclass(frozen=True, slots=True)
class RelayOutcome:
    status: OutcomeStatus
    detail: str | None = None
    challenge: str | None = None
    sent: SentMessage | None = None

    @property
    def ok(self) -> bool:
        return self.status not in {"no_route", "send_failed"}


class PlatformClient(Protocol):
    platform: Platform

    async def send_message(
        self,
        chat_id: str,
        text: str,
        *,
        thread_id: str | None = None,
        credential: str | None = None,
    ) -> SentMessage: ...

    async def list_channels(self, workspace_id: str) -> list[ChannelInfo]: ...

    async def resolve_user(self, user_id: str) -> RemoteUser | None: ...

    async def list_users(self, workspace_id: str) -> list[RemoteUser]: ...
