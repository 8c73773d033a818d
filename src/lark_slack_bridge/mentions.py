"""Mention markup codecs.

``decode`` turns a platform's mention markup into plain ``@displayName`` text
and drops system/bot mentions. ``encode`` turns ``@displayName`` back into the
destination platform's markup using a lowercase name -> user id index.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping, Sequence
from typing import Any, Protocol

from .model import MentionRef, RemoteUser

# Word characters plus Hiragana, Katakana and CJK Unified Ideographs.
MENTION_PATTERN = re.compile(r"@([\w぀-ゟ゠-ヿ一-鿿]+)")

LARK_SYSTEM_TOKEN_RE = re.compile(r"@_\w+")
SLACK_TOKEN_RE = re.compile(
    r"<(?P<kind>[@!])(?P<target>[^>|]+)(?:\|(?P<label>[^>]*))?>"
)

_INLINE_SPACE_RE = re.compile(r"[^\S\n]+")
_NEWLINE_PAD_RE = re.compile(r" *\n *")


def collapse_whitespace(text: str) -> str:
    collapsed = _INLINE_SPACE_RE.sub(" ", text)
    collapsed = _NEWLINE_PAD_RE.sub("\n", collapsed)
    return collapsed.strip()


def _token_re(token: str) -> re.Pattern[str]:
    # @_user_1 must not eat the prefix of @_user_10
    return re.compile(re.escape(token) + r"(?!\w)")


def parse_lark_mentions(raw: object) -> tuple[MentionRef, ...]:
    if not isinstance(raw, list):
        return ()
    refs: list[MentionRef] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        key = item.get("key")
        if not isinstance(key, str) or not key:
            continue
        identity = item.get("id")
        user_id = identity.get("user_id") if isinstance(identity, dict) else None
        if not isinstance(user_id, str) or not user_id.strip():
            user_id = None
        name = item.get("name")
        refs.append(
            MentionRef(
                raw_token=key,
                resolved_user_id=user_id,
                resolved_display_name=name if isinstance(name, str) and name else None,
                is_automated_account=user_id is None,
            )
        )
    return tuple(refs)


def lark_system_mentions(text: str) -> tuple[MentionRef, ...]:
    seen: dict[str, MentionRef] = {}
    for token in LARK_SYSTEM_TOKEN_RE.findall(text or ""):
        seen.setdefault(token, MentionRef(raw_token=token, is_automated_account=True))
    return tuple(seen.values())


def parse_slack_mentions(text: str) -> tuple[MentionRef, ...]:
    refs: dict[str, MentionRef] = {}
    for match in SLACK_TOKEN_RE.finditer(text or ""):
        token = match.group(0)
        if token in refs:
            continue
        if match.group("kind") == "!":
            refs[token] = MentionRef(raw_token=token, is_automated_account=True)
            continue
        label = match.group("label") or None
        refs[token] = MentionRef(
            raw_token=token,
            resolved_user_id=match.group("target"),
            resolved_display_name=label,
        )
    return tuple(refs.values())


def build_user_index(users: Iterable[RemoteUser]) -> dict[str, str]:
    index: dict[str, str] = {}
    for user in users:
        if user.is_deleted or user.is_bot:
            continue
        for name in (user.display_name, user.real_name, user.name):
            if name:
                index[name.lower()] = user.id
    return index


def _encode(
    text: str,
    index: Mapping[str, str],
    render,
) -> str:
    if not text or not index:
        return text

    def _replace(match: re.Match[str]) -> str:
        name = match.group(1)
        user_id = index.get(name.lower())
        if user_id is None:
            return match.group(0)
        return render(user_id, name)

    return MENTION_PATTERN.sub(_replace, text)


class MentionCodec(Protocol):
    def decode(self, text: str, mentions: Sequence[MentionRef] | None) -> str: ...

    def encode(self, text: str, index: Mapping[str, str]) -> str: ...


class LarkMentionCodec:
    """``@_user_N`` keys plus a mentions array <-> ``@name``; ``<at>`` tags out."""

    def decode(self, text: str, mentions: Sequence[MentionRef] | None) -> str:
        if not text or not mentions:
            return text
        replacements: dict[str, str] = {}
        for mention in mentions:
            if not mention.raw_token:
                continue
            if (
                mention.is_automated_account
                or not mention.resolved_user_id
                or not mention.resolved_display_name
            ):
                replacements[mention.raw_token] = ""
            else:
                replacements[mention.raw_token] = f"@{mention.resolved_display_name}"
        # one pass, so substituted names are never swept as leftover keys
        alternatives = [
            _token_re(token).pattern
            for token in sorted(replacements, key=len, reverse=True)
        ]
        alternatives.append(LARK_SYSTEM_TOKEN_RE.pattern)
        pattern = re.compile("|".join(alternatives))
        result = pattern.sub(lambda m: replacements.get(m.group(0), ""), text)
        return collapse_whitespace(result)

    def encode(self, text: str, index: Mapping[str, str]) -> str:
        return _encode(
            text,
            index,
            lambda user_id, name: f'<at user_id="{user_id}">{name}</at>',
        )


class SlackMentionCodec:
    """``<@U123>`` and ``<!here>`` tokens <-> ``@name``; ``<@U123>`` out."""

    def decode(self, text: str, mentions: Sequence[MentionRef] | None) -> str:
        if not text or not mentions:
            return text
        by_token = {mention.raw_token: mention for mention in mentions}

        def _replace(match: re.Match[str]) -> str:
            mention = by_token.get(match.group(0))
            if mention is None:
                return match.group(0)
            if mention.is_automated_account:
                return ""
            name = (
                mention.resolved_display_name
                or match.group("label")
                or mention.resolved_user_id
                or match.group("target")
            )
            return f"@{name}"

        return collapse_whitespace(SLACK_TOKEN_RE.sub(_replace, text))

    def encode(self, text: str, index: Mapping[str, str]) -> str:
        return _encode(text, index, lambda user_id, _name: f"<@{user_id}>")


MENTION_CODECS: dict[str, Any] = {
    "slack": SlackMentionCodec(),
    "lark": LarkMentionCodec(),
}


def codec_for(platform: str) -> MentionCodec:
    return MENTION_CODECS[platform]
