"""Inbound event normalization.

Each platform's payloads are first classified into a closed set of variants
by their discriminator fields; one extraction function per variant then
builds the canonical :class:`BridgeMessage`. Anything unrecognized becomes a
:class:`NotAMessageEvent` so upstream schema changes never fail a delivery.
"""

from __future__ import annotations

import hmac
import html
import json
import re
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import replace
from typing import Any, Literal, Protocol
from urllib.parse import parse_qs

from .errors import InvalidVerificationToken, UnsupportedEventSchema
from .logging import get_logger
from .mentions import lark_system_mentions, parse_lark_mentions, parse_slack_mentions
from .model import (
    BridgeMessage,
    Challenge,
    MentionRef,
    NormalizedEvent,
    NotAMessageEvent,
    RemoteUser,
)

logger = get_logger(__name__)

LarkVariant = Literal["challenge", "v2", "v1", "encrypted", "unknown"]
SlackVariant = Literal["url_verification", "event_callback", "outgoing_webhook", "unknown"]

LARK_MESSAGE_EVENT = "im.message.receive_v1"
SLACK_MESSAGE_EVENTS = frozenset({"message", "app_mention"})
# Subtypes that still carry a human-authored message body.
SLACK_MESSAGE_SUBTYPES = frozenset({"file_share", "thread_broadcast", "me_message"})
SLACK_BOT_SUBTYPE = "bot_message"
POST_LOCALES = ("ja_jp", "zh_cn", "en_us")

SenderRule = Callable[[Mapping[str, Any]], "str | None"]


class UserLookup(Protocol):
    async def lookup(self, user_id: str) -> RemoteUser | None: ...


def field_path(*keys: str) -> SenderRule:
    def _rule(source: Mapping[str, Any]) -> str | None:
        value: Any = source
        for key in keys:
            if not isinstance(value, Mapping):
                return None
            value = value.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
        return None

    _rule.__name__ = "field_path:" + ".".join(keys)
    return _rule


def first_match(rules: Sequence[SenderRule], source: Mapping[str, Any]) -> str | None:
    for rule in rules:
        value = rule(source)
        if value is not None:
            return value
    return None


LARK_V2_SENDER_RULES: tuple[SenderRule, ...] = (
    field_path("sender", "sender_id", "open_id"),
    field_path("sender", "sender_id", "user_id"),
    field_path("sender", "sender_id", "union_id"),
)
LARK_V1_SENDER_RULES: tuple[SenderRule, ...] = (
    field_path("open_id"),
    field_path("user_open_id"),
    field_path("user_id"),
    field_path("employee_id"),
)
SLACK_EVENT_SENDER_RULES: tuple[SenderRule, ...] = (
    field_path("user"),
    field_path("bot_id"),
    field_path("username"),
)
SLACK_WEBHOOK_SENDER_RULES: tuple[SenderRule, ...] = (
    field_path("user_id"),
    field_path("bot_id"),
    field_path("user_name"),
)


def _parse_form_payload(raw: str) -> dict[str, str]:
    parsed = parse_qs(raw, keep_blank_values=True)
    return {key: values[-1] if values else "" for key, values in parsed.items()}


def coerce_payload(payload: object) -> dict[str, Any] | None:
    if isinstance(payload, bytes):
        payload = payload.decode("utf-8", "replace")
    if isinstance(payload, dict):
        return payload
    if isinstance(payload, str):
        raw = payload.strip()
        if raw.startswith("{") and raw.endswith("}"):
            try:
                value = json.loads(raw)
            except json.JSONDecodeError:
                value = None
            if isinstance(value, dict):
                return value
        parsed = _parse_form_payload(raw)
        if "payload" in parsed:
            try:
                decoded = json.loads(parsed["payload"])
            except json.JSONDecodeError:
                decoded = None
            if isinstance(decoded, dict):
                return decoded
        return parsed or None
    return None


def content_text(content: object) -> str:
    """Text from a JSON envelope like ``{"text": ...}``, else the literal value."""
    if isinstance(content, Mapping):
        text = content.get("text")
        return text if isinstance(text, str) else ""
    if not isinstance(content, str):
        return ""
    try:
        decoded = json.loads(content)
    except (json.JSONDecodeError, ValueError):
        return content
    if isinstance(decoded, Mapping):
        text = decoded.get("text")
        return text if isinstance(text, str) else content
    return content


def flatten_post(content: object) -> str:
    if isinstance(content, str):
        try:
            content = json.loads(content)
        except (json.JSONDecodeError, ValueError):
            return ""
    if not isinstance(content, Mapping):
        return ""
    post: Any = content.get("post", content)
    if isinstance(post, Mapping) and "content" not in post:
        localized = next(
            (post[locale] for locale in POST_LOCALES if isinstance(post.get(locale), Mapping)),
            None,
        )
        if localized is None:
            localized = next((v for v in post.values() if isinstance(v, Mapping)), None)
        post = localized
    if not isinstance(post, Mapping):
        return ""
    parts: list[str] = []
    title = post.get("title")
    if isinstance(title, str) and title:
        parts.append(title)
    lines = post.get("content")
    if isinstance(lines, list):
        for line in lines:
            if not isinstance(line, list):
                continue
            for element in line:
                if not isinstance(element, Mapping):
                    continue
                tag = element.get("tag")
                if tag in {"text", "a"}:
                    text = element.get("text")
                    if isinstance(text, str) and text:
                        parts.append(text)
                elif tag == "at":
                    name = element.get("user_name")
                    if isinstance(name, str) and name:
                        parts.append(f"@{name}")
    return " ".join(parts).strip()


def _timestamp(value: object, *, millis: bool = False) -> float:
    try:
        stamp = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return time.time()
    return stamp / 1000.0 if millis else stamp


def _event_id(value: object) -> str | None:
    return value.strip() if isinstance(value, str) and value.strip() else None


def _check_token(platform: str, expected: str | None, declared: object) -> None:
    if not expected:
        return
    if not isinstance(declared, str) or not hmac.compare_digest(
        declared.encode(), expected.encode()
    ):
        logger.warning("normalize.invalid_token", platform=platform)
        raise InvalidVerificationToken(platform)


# Lark


def classify_lark(payload: Mapping[str, Any]) -> LarkVariant:
    if "encrypt" in payload:
        return "encrypted"
    if payload.get("type") == "url_verification" or (
        "challenge" in payload and "event" not in payload
    ):
        return "challenge"
    header = payload.get("header")
    if payload.get("schema") == "2.0" or (
        isinstance(header, Mapping) and "event_type" in header
    ):
        return "v2"
    event = payload.get("event")
    if isinstance(event, Mapping) and (
        payload.get("type") == "event_callback" or "type" in event
    ):
        return "v1"
    return "unknown"


def _lark_declared_token(payload: Mapping[str, Any], variant: LarkVariant) -> object:
    if variant == "v2":
        header = payload.get("header")
        return header.get("token") if isinstance(header, Mapping) else None
    return payload.get("token")


def extract_lark_v2(payload: Mapping[str, Any]) -> BridgeMessage | NotAMessageEvent:
    header = payload.get("header")
    event_type = header.get("event_type") if isinstance(header, Mapping) else None
    if event_type != LARK_MESSAGE_EVENT:
        return NotAMessageEvent(f"lark event {event_type!r}")
    event = payload.get("event")
    if not isinstance(event, Mapping):
        return NotAMessageEvent("lark event body missing")
    message = event.get("message")
    if not isinstance(message, Mapping):
        return NotAMessageEvent("lark message missing")
    chat_id = message.get("chat_id")
    if not isinstance(chat_id, str) or not chat_id:
        return NotAMessageEvent("lark chat_id missing")

    message_type = message.get("message_type")
    content = message.get("content")
    if message_type == "text":
        text = content_text(content)
    elif message_type == "post":
        text = flatten_post(content) or f"[{message_type} message]"
    else:
        text = f"[{message_type or 'unknown'} message]"

    if "mentions" in message and isinstance(message.get("mentions"), list):
        mentions = parse_lark_mentions(message.get("mentions"))
    else:
        mentions = ()
    if not mentions:
        mentions = lark_system_mentions(text)

    sender = event.get("sender")
    sender_type = sender.get("sender_type") if isinstance(sender, Mapping) else None
    sender_id = first_match(LARK_V2_SENDER_RULES, event)
    if sender_id is None:
        return NotAMessageEvent("lark sender missing")

    thread_id = message.get("root_id") or message.get("parent_id") or None
    return BridgeMessage(
        source_platform="lark",
        source_chat_id=chat_id,
        source_thread_id=thread_id if isinstance(thread_id, str) else None,
        sender_id=sender_id,
        sender_is_automated=sender_type in {"app", "bot"},
        raw_text=text,
        mentions=mentions,
        timestamp=_timestamp(
            message.get("create_time") or header.get("create_time"),  # type: ignore[union-attr]
            millis=True,
        ),
        message_id=message.get("message_id") or None,
        event_id=_event_id(header.get("event_id")),  # type: ignore[union-attr]
    )


def extract_lark_v1(payload: Mapping[str, Any]) -> BridgeMessage | NotAMessageEvent:
    event = payload.get("event")
    if not isinstance(event, Mapping):
        return NotAMessageEvent("lark event body missing")
    if event.get("type") != "message":
        return NotAMessageEvent(f"lark v1 event {event.get('type')!r}")
    chat_id = event.get("open_chat_id") or event.get("chat_id")
    if not isinstance(chat_id, str) or not chat_id:
        return NotAMessageEvent("lark chat_id missing")
    sender_id = first_match(LARK_V1_SENDER_RULES, event)
    if sender_id is None:
        return NotAMessageEvent("lark sender missing")

    msg_type = event.get("msg_type") or "text"
    if msg_type == "text":
        text = content_text(event.get("text") or event.get("content") or "")
    elif msg_type == "post":
        text = flatten_post(event.get("content")) or f"[{msg_type} message]"
    else:
        text = f"[{msg_type} message]"

    thread_id = event.get("root_id") or event.get("parent_id") or None
    return BridgeMessage(
        source_platform="lark",
        source_chat_id=chat_id,
        source_thread_id=thread_id if isinstance(thread_id, str) else None,
        sender_id=sender_id,
        sender_is_automated=event.get("sender_type") in {"app", "bot"},
        raw_text=text,
        mentions=lark_system_mentions(text),
        timestamp=_timestamp(payload.get("ts") or event.get("create_time")),
        message_id=event.get("open_message_id") or event.get("message_id") or None,
        event_id=_event_id(payload.get("uuid")),
    )


class LarkNormalizer:
    platform = "lark"

    def __init__(
        self,
        *,
        verification_token: str | None = None,
        users: UserLookup | None = None,
    ) -> None:
        self._verification_token = verification_token
        self._users = users

    async def normalize(self, raw: object) -> NormalizedEvent:
        payload = coerce_payload(raw)
        if payload is None:
            raise UnsupportedEventSchema("lark payload is not an object")
        variant = classify_lark(payload)
        if variant == "encrypted":
            logger.warning("lark.encrypted_payload_unsupported")
            return NotAMessageEvent("encrypted lark payloads are not supported")
        if variant == "unknown":
            logger.info("lark.unknown_payload", keys=sorted(payload)[:10])
            return NotAMessageEvent("unknown lark payload")

        _check_token("lark", self._verification_token, _lark_declared_token(payload, variant))

        if variant == "challenge":
            challenge = payload.get("challenge")
            return Challenge(value=str(challenge or ""))
        if variant == "v2":
            result = extract_lark_v2(payload)
        else:
            result = extract_lark_v1(payload)
        if not isinstance(result, BridgeMessage):
            return result
        if not result.raw_text.strip():
            return NotAMessageEvent("empty lark message")
        return await self._with_sender_name(result)

    async def _with_sender_name(self, message: BridgeMessage) -> BridgeMessage:
        if self._users is None or message.sender_is_automated:
            return message
        user = await self._users.lookup(message.sender_id)
        if user is None or not user.best_name:
            return message
        return replace(message, sender_display_name=user.best_name)


# Slack

_SLACK_CHANNEL_RE = re.compile(r"<#(?P<id>[A-Z0-9]+)(?:\|(?P<name>[^>]*))?>")
_SLACK_DATE_RE = re.compile(r"<!date\^[^>|]*(?:\|(?P<fallback>[^>]*))?>")
_SLACK_LINK_RE = re.compile(
    r"<(?P<url>(?:https?|mailto|tel|ftp):[^>|]+)(?:\|(?P<label>[^>]*))?>"
)


def _slack_link(match: re.Match[str]) -> str:
    url = match.group("url")
    label = match.group("label")
    if url.startswith("mailto:"):
        return label or url[len("mailto:") :]
    if not label or label == url:
        return url
    return f"{label} ({url})"


def clean_slack_text(text: str) -> str:
    """Plain text from Slack mrkdwn, leaving ``<@U..>`` and ``<!..>`` tokens."""
    if not text:
        return ""
    cleaned = _SLACK_CHANNEL_RE.sub(
        lambda m: f"#{m.group('name') or m.group('id')}", text
    )
    cleaned = _SLACK_DATE_RE.sub(lambda m: m.group("fallback") or "", cleaned)
    cleaned = _SLACK_LINK_RE.sub(_slack_link, cleaned)
    return html.unescape(cleaned)


def classify_slack(payload: Mapping[str, Any]) -> SlackVariant:
    payload_type = payload.get("type")
    if payload_type == "url_verification":
        return "url_verification"
    if payload_type == "event_callback" and isinstance(payload.get("event"), Mapping):
        return "event_callback"
    if payload_type is None and "channel_id" in payload and "text" in payload:
        return "outgoing_webhook"
    return "unknown"


def unwrap_socket_envelope(payload: Mapping[str, Any]) -> Mapping[str, Any]:
    if payload.get("type") == "events_api" and "envelope_id" in payload:
        inner = payload.get("payload")
        if isinstance(inner, Mapping):
            return inner
    return payload


def extract_slack_event(payload: Mapping[str, Any]) -> BridgeMessage | NotAMessageEvent:
    event = payload["event"]
    event_type = event.get("type")
    if event_type not in SLACK_MESSAGE_EVENTS:
        return NotAMessageEvent(f"slack event {event_type!r}")
    subtype = event.get("subtype")
    if subtype is not None and subtype != SLACK_BOT_SUBTYPE and subtype not in SLACK_MESSAGE_SUBTYPES:
        return NotAMessageEvent(f"slack message subtype {subtype!r}")
    channel = event.get("channel")
    if not isinstance(channel, str) or not channel:
        return NotAMessageEvent("slack channel missing")
    sender_id = first_match(SLACK_EVENT_SENDER_RULES, event)
    if sender_id is None:
        return NotAMessageEvent("slack sender missing")

    text = event.get("text")
    text = text if isinstance(text, str) else ""
    cleaned = clean_slack_text(text)
    thread_ts = event.get("thread_ts")
    profile = event.get("user_profile")
    display_name = None
    if isinstance(profile, Mapping):
        display_name = profile.get("display_name") or profile.get("real_name") or None
    return BridgeMessage(
        source_platform="slack",
        source_chat_id=channel,
        source_thread_id=thread_ts if isinstance(thread_ts, str) and thread_ts else None,
        sender_id=sender_id,
        sender_display_name=display_name,
        sender_is_automated=bool(event.get("bot_id")) or subtype == SLACK_BOT_SUBTYPE,
        raw_text=cleaned,
        mentions=parse_slack_mentions(cleaned),
        timestamp=_timestamp(event.get("ts") or payload.get("event_time")),
        message_id=event.get("ts") or None,
        event_id=_event_id(payload.get("event_id")),
    )


def extract_slack_webhook(payload: Mapping[str, Any]) -> BridgeMessage | NotAMessageEvent:
    channel = payload.get("channel_id")
    if not isinstance(channel, str) or not channel:
        return NotAMessageEvent("slack channel missing")
    sender_id = first_match(SLACK_WEBHOOK_SENDER_RULES, payload)
    if sender_id is None:
        return NotAMessageEvent("slack sender missing")
    text = payload.get("text")
    text = text if isinstance(text, str) else ""
    cleaned = clean_slack_text(text)
    user_name = payload.get("user_name")
    return BridgeMessage(
        source_platform="slack",
        source_chat_id=channel,
        source_chat_name=payload.get("channel_name") or None,
        sender_id=sender_id,
        sender_display_name=user_name if isinstance(user_name, str) and user_name else None,
        sender_is_automated=bool(payload.get("bot_id")) or sender_id == "USLACKBOT",
        raw_text=cleaned,
        mentions=parse_slack_mentions(cleaned),
        timestamp=_timestamp(payload.get("timestamp")),
        message_id=payload.get("timestamp") or None,
    )


class SlackNormalizer:
    platform = "slack"

    def __init__(
        self,
        *,
        verification_token: str | None = None,
        users: UserLookup | None = None,
    ) -> None:
        self._verification_token = verification_token
        self._users = users

    async def normalize(self, raw: object) -> NormalizedEvent:
        payload = coerce_payload(raw)
        if payload is None:
            raise UnsupportedEventSchema("slack payload is not an object")
        payload = unwrap_socket_envelope(payload)
        variant = classify_slack(payload)
        if variant == "unknown":
            logger.info("slack.unknown_payload", payload_type=payload.get("type"))
            return NotAMessageEvent("unknown slack payload")

        _check_token("slack", self._verification_token, payload.get("token"))

        if variant == "url_verification":
            return Challenge(value=str(payload.get("challenge") or ""))
        if variant == "event_callback":
            result = extract_slack_event(payload)
        else:
            result = extract_slack_webhook(payload)
        return await self._complete(result)

    async def normalize_history(
        self, channel_id: str, raw: Mapping[str, Any]
    ) -> NormalizedEvent:
        """Normalize a message read back through ``conversations.history``."""
        event = {**raw, "type": "message", "channel": channel_id}
        return await self._complete(extract_slack_event({"event": event}))

    async def _complete(self, result: BridgeMessage | NotAMessageEvent) -> NormalizedEvent:
        if not isinstance(result, BridgeMessage):
            return result
        if not result.raw_text.strip():
            return NotAMessageEvent("empty slack message")
        if result.sender_is_automated:
            return result
        return await self._resolve_users(result)

    async def _resolve_users(self, message: BridgeMessage) -> BridgeMessage:
        if self._users is None:
            return message
        mentions: list[MentionRef] = []
        for mention in message.mentions:
            if mention.resolved_user_id is None:
                mentions.append(mention)
                continue
            user = await self._users.lookup(mention.resolved_user_id)
            if user is None:
                mentions.append(mention)
                continue
            mentions.append(
                replace(
                    mention,
                    resolved_display_name=user.best_name or mention.resolved_display_name,
                    is_automated_account=user.is_bot,
                )
            )
        display_name = message.sender_display_name
        if display_name is None:
            sender = await self._users.lookup(message.sender_id)
            if sender is not None:
                display_name = sender.best_name
        return replace(message, mentions=tuple(mentions), sender_display_name=display_name)
