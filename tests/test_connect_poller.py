from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import pytest

from lark_slack_bridge.bridge import build_bridge
from lark_slack_bridge.config import BridgeSettings, LarkSettings, SlackSettings, StoreSettings
from lark_slack_bridge.connect_poller import (
    SlackConnectPoller,
    build_connect_poller,
    newer_than,
    ts_key,
)
from lark_slack_bridge.model import RemoteUser
from lark_slack_bridge.slack_client import SlackApiError
from lark_slack_bridge.store import MemoryStore
from tests.fakes import FakeClient

CHANNEL = "C0SHARED"


@dataclass
class FakeHistory:
    history: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    replies: dict[tuple[str, str], list[dict[str, Any]]] = field(default_factory=dict)
    fail_next: bool = False
    calls: list[tuple[str, str, str | None, str | None]] = field(default_factory=list)

    async def conversations_history(
        self,
        channel_id: str,
        *,
        oldest: str | None = None,
        limit: int = 100,
        token: str | None = None,
    ) -> list[dict[str, Any]]:
        self.calls.append(("history", channel_id, oldest, token))
        if self.fail_next:
            self.fail_next = False
            raise SlackApiError("Slack API error: not_in_channel", error="not_in_channel")
        messages = self.history.get(channel_id, [])
        if oldest is not None:
            messages = [m for m in messages if ts_key(m["ts"]) > ts_key(oldest)]
        return messages[:limit]

    async def conversations_replies(
        self,
        channel_id: str,
        thread_ts: str,
        *,
        oldest: str | None = None,
        limit: int = 100,
        token: str | None = None,
    ) -> list[dict[str, Any]]:
        self.calls.append(("replies", channel_id, oldest, token))
        thread = self.replies.get((channel_id, thread_ts), [])
        parent, rest = thread[:1], thread[1:]
        if oldest is not None:
            rest = [m for m in rest if ts_key(m["ts"]) > ts_key(oldest)]
        return (parent + rest)[:limit]


def _settings(**slack) -> BridgeSettings:
    return BridgeSettings(
        slack=SlackSettings(bot_token="xoxb-bot", **slack),
        lark=LarkSettings(app_id="cli_1", app_secret="secret", default_chat_id="oc_default"),
        store=StoreSettings(backend="memory"),
    )


def _poller(history: FakeHistory) -> tuple[SlackConnectPoller, FakeClient]:
    slack = FakeClient(
        platform="slack",
        users=[
            RemoteUser(id="U1", display_name="Ann"),
            RemoteUser(id="U2", display_name="Ben"),
        ],
    )
    lark = FakeClient(platform="lark")
    bridge = build_bridge(_settings(), store=MemoryStore(), slack_client=slack, lark_client=lark)
    poller = SlackConnectPoller(
        bridge,
        history,
        bridge.normalizers["slack"],  # type: ignore[arg-type]
        [CHANNEL],
        user_token="xoxp-user",
    )
    return poller, lark


def _msg(ts: str, text: str, user: str = "U1", **extra) -> dict[str, Any]:
    return {"type": "message", "ts": ts, "user": user, "text": text, **extra}


def test_ts_key_orders_slack_timestamps() -> None:
    assert ts_key("1700000000.000100") < ts_key("1700000000.000200")
    assert ts_key("1.9") > ts_key("1.10")
    assert ts_key("0") == (0, 0)
    assert ts_key("garbage") == (0, 0)
    assert ts_key(None) == (0, 0)

    messages = [{"ts": "3.0"}, {"ts": "1.0"}, {"ts": "2.0"}, {"text": "no ts"}]
    assert [m["ts"] for m in newer_than(messages, "1.0")] == ["2.0", "3.0"]


@pytest.mark.anyio
async def test_existing_history_is_not_replayed() -> None:
    history = FakeHistory(
        history={CHANNEL: [_msg("100.000002", "old two"), _msg("100.000001", "old one")]}
    )
    poller, lark = _poller(history)

    await poller.seed()
    assert poller.last_seen(CHANNEL) == "100.000002"
    assert await poller.poll_once() == []

    history.history[CHANNEL][:0] = [_msg("101.5", "second"), _msg("101.2", "first")]
    outcomes = await poller.poll_once()

    assert [outcome.status for outcome in outcomes] == ["forwarded", "forwarded"]
    assert [call.text for call in lark.sent] == ["[Slack: Ann]\nfirst", "[Slack: Ann]\nsecond"]
    assert lark.sent[0].chat_id == "oc_default"
    assert poller.last_seen(CHANNEL) == "101.5"

    assert await poller.poll_once() == []
    assert len(lark.sent) == 2
    assert {call[3] for call in history.calls} == {"xoxp-user"}


@pytest.mark.anyio
async def test_new_thread_replies_are_relayed() -> None:
    parent = _msg(
        "100.0", "parent", thread_ts="100.0", reply_count=1, latest_reply="100.5"
    )
    history = FakeHistory(
        history={CHANNEL: [parent]},
        replies={(CHANNEL, "100.0"): [parent, _msg("100.5", "old reply", thread_ts="100.0")]},
    )
    poller, lark = _poller(history)
    await poller.seed()

    assert await poller.poll_once() == []
    assert not any(call[0] == "replies" for call in history.calls)

    history.replies[(CHANNEL, "100.0")].append(
        _msg("102.0", "new reply", user="U2", thread_ts="100.0")
    )
    parent.update(reply_count=2, latest_reply="102.0")
    outcomes = await poller.poll_once()

    assert [outcome.status for outcome in outcomes] == ["forwarded"]
    assert [call.text for call in lark.sent] == ["[Slack: Ben]\nnew reply"]
    assert await poller.poll_once() == []


@pytest.mark.anyio
async def test_bot_messages_and_broadcast_replies_are_not_forwarded() -> None:
    history = FakeHistory(history={CHANNEL: []})
    poller, lark = _poller(history)
    await poller.seed()
    assert poller.last_seen(CHANNEL) == "0"

    history.history[CHANNEL] = [
        _msg("104.0", "also in thread", thread_ts="99.0", subtype="thread_broadcast"),
        {"type": "message", "ts": "103.0", "bot_id": "B1", "subtype": "bot_message", "text": "beep"},
    ]
    outcomes = await poller.poll_once()

    assert [outcome.status for outcome in outcomes] == ["dropped"]
    assert lark.sent == []
    assert poller.last_seen(CHANNEL) == "104.0"


@pytest.mark.anyio
async def test_failed_seed_is_retried_before_relaying() -> None:
    history = FakeHistory(history={CHANNEL: [_msg("100.0", "old")]}, fail_next=True)
    poller, lark = _poller(history)

    await poller.seed()
    assert poller.last_seen(CHANNEL) is None

    assert await poller.poll_once() == []
    assert poller.last_seen(CHANNEL) == "100.0"
    assert lark.sent == []


@pytest.mark.anyio
async def test_poll_errors_are_contained_per_channel() -> None:
    history = FakeHistory(history={CHANNEL: [_msg("100.0", "old")]})
    poller, lark = _poller(history)
    await poller.seed()

    history.fail_next = True
    assert await poller.poll_once() == []
    assert poller.last_seen(CHANNEL) == "100.0"

    history.history[CHANNEL].insert(0, _msg("101.0", "after the outage"))
    assert [o.status for o in await poller.poll_once()] == ["forwarded"]
    assert lark.sent[0].text == "[Slack: Ann]\nafter the outage"


def test_build_connect_poller() -> None:
    slack, lark = FakeClient(platform="slack"), FakeClient(platform="lark")
    bridge = build_bridge(_settings(), store=MemoryStore(), slack_client=slack, lark_client=lark)
    assert build_connect_poller(bridge, _settings().slack) is None

    settings = _settings(user_token="xoxp-user", connect_channel_ids=(CHANNEL,))
    poller = build_connect_poller(bridge, settings.slack)
    assert poller is not None
    assert poller.channel_ids == (CHANNEL,)
