from __future__ import annotations

from lark_slack_bridge.loop_guard import LoopGuard
from lark_slack_bridge.model import BridgeMessage, SentMessage
from tests.fakes import FakeClock


def _message(**kwargs) -> BridgeMessage:
    values = {
        "source_platform": "lark",
        "source_chat_id": "oc_1",
        "sender_id": "ou_1",
        "raw_text": "hi",
        "timestamp": 0.0,
    }
    values.update(kwargs)
    return BridgeMessage(**values)


def test_automated_sender_is_dropped() -> None:
    guard = LoopGuard()
    assert guard.check(_message(sender_is_automated=True)) == "drop"
    assert guard.check(_message()) == "pass"


def test_echo_of_bridge_send_is_dropped_until_expiry() -> None:
    clock = FakeClock()
    guard = LoopGuard(ledger_ttl_s=300, clock=clock)
    guard.record(SentMessage(platform="lark", chat_id="oc_1", message_id="om_1"))

    assert guard.check(_message(message_id="om_1")) == "drop"
    assert guard.check(_message(message_id="om_2")) == "pass"
    assert guard.check(_message(message_id="om_1", source_chat_id="oc_2")) == "pass"

    clock.advance(301)
    assert guard.check(_message(message_id="om_1")) == "pass"


def test_record_without_message_id_is_ignored() -> None:
    guard = LoopGuard()
    guard.record(SentMessage(platform="slack", chat_id="C1"))
    assert not guard.was_sent_by_bridge("slack", "C1", "")


def test_first_delivery_until_expiry() -> None:
    clock = FakeClock()
    guard = LoopGuard(delivery_ttl_s=600, clock=clock)

    assert guard.first_delivery("lark", "ev_1")
    assert not guard.first_delivery("lark", "ev_1")
    assert guard.first_delivery("slack", "ev_1")
    assert guard.first_delivery("lark", "ev_2")

    clock.advance(601)
    assert guard.first_delivery("lark", "ev_1")
