from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Literal

# [C0123ABCD|1700000000.123456] reply text
_THREAD_REPLY_RE = re.compile(
    r"^\[(?P<channel>[A-Z][A-Z0-9]*)\|(?P<thread>\d+\.\d+)\]\s*(?P<body>.*)$",
    re.DOTALL,
)
_CHANNEL_ID_RE = re.compile(
    r"^(?P<channel>[A-Z][A-Z0-9]{8,})\s+(?P<body>\S.*)$",
    re.DOTALL,
)
_CHANNEL_NAME_RE = re.compile(
    r"^#(?P<channel>\S+)\s+(?P<body>.+)$",
    re.DOTALL,
)


DirectiveKind = Literal["none", "thread", "channel_id", "channel_name"]


@dataclass(frozen=True, slots=True)
class Directive:
    target_channel: str | None
    message_text: str
    target_thread: str | None = None
    kind: DirectiveKind = field(default="none", compare=False)
    original_text: str | None = field(default=None, compare=False)

    @property
    def is_explicit(self) -> bool:
        return self.target_channel is not None

    @property
    def full_text(self) -> str:
        """The text as the sender wrote it, directive included."""
        return self.original_text if self.original_text is not None else self.message_text


def parse_directive(text: str) -> Directive:
    if not text:
        return Directive(target_channel=None, message_text=text or "")

    match = _THREAD_REPLY_RE.match(text)
    if match is not None:
        return Directive(
            target_channel=match.group("channel"),
            target_thread=match.group("thread"),
            message_text=match.group("body").strip(),
            kind="thread",
            original_text=text,
        )

    match = _CHANNEL_ID_RE.match(text)
    if match is not None:
        return Directive(
            target_channel=match.group("channel"),
            message_text=match.group("body").strip(),
            kind="channel_id",
            original_text=text,
        )

    match = _CHANNEL_NAME_RE.match(text)
    if match is not None:
        body = match.group("body").strip()
        if body:
            return Directive(
                target_channel=match.group("channel"),
                message_text=body,
                kind="channel_name",
                original_text=text,
            )

    return Directive(target_channel=None, message_text=text)
