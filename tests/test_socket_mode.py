from __future__ import annotations

import json

import pytest

from lark_slack_bridge.bridge import build_bridge
from lark_slack_bridge.config import BridgeSettings, LarkSettings, SlackSettings, StoreSettings
from lark_slack_bridge.socket_mode import envelope_ack, process_envelope
from lark_slack_bridge.store import MemoryStore
from tests.fakes import FakeClient


def _bridge(*, slack_token: str | None = None):
    settings = BridgeSettings(
        slack=SlackSettings(bot_token="xoxb-bot", verification_token=slack_token),
        lark=LarkSettings(app_id="cli_1", app_secret="secret", default_chat_id="oc_default"),
        store=StoreSettings(backend="memory"),
    )
    lark = FakeClient(platform="lark")
    bridge = build_bridge(
        settings,
        store=MemoryStore(),
        slack_client=FakeClient(platform="slack"),
        lark_client=lark,
    )
    return bridge, lark


def _envelope(**overrides) -> dict:
    envelope = {
        "envelope_id": "env-1",
        "type": "events_api",
        "payload": {
            "token": "tok",
            "type": "event_callback",
            "event": {"type": "message", "channel": "C1", "user": "U1", "text": "hi", "ts": "2.0"},
        },
    }
    envelope.update(overrides)
    return envelope


def test_envelope_ack() -> None:
    assert json.loads(envelope_ack({"envelope_id": "env-1"}) or "") == {"envelope_id": "env-1"}
    assert envelope_ack({"type": "hello"}) is None
    assert envelope_ack({"envelope_id": ""}) is None


@pytest.mark.anyio
async def test_events_api_envelope_is_relayed() -> None:
    bridge, lark = _bridge()
    outcome = await process_envelope(bridge, _envelope())

    assert outcome is not None
    assert outcome.status == "forwarded"
    assert lark.sent[0].chat_id == "oc_default"
    assert lark.sent[0].text == "[Slack: U1]\nhi"


@pytest.mark.anyio
async def test_retry_and_other_envelopes_are_skipped() -> None:
    bridge, lark = _bridge()
    assert await process_envelope(bridge, _envelope(retry_attempt=1)) is None
    assert await process_envelope(bridge, {"type": "hello"}) is None
    assert await process_envelope(bridge, _envelope(payload="nope")) is None
    assert lark.sent == []


@pytest.mark.anyio
async def test_invalid_token_is_swallowed() -> None:
    bridge, lark = _bridge(slack_token="expected")
    assert await process_envelope(bridge, _envelope()) is None
    assert lark.sent == []
