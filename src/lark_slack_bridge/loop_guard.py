from __future__ import annotations

import time
from typing import Literal

from .cache import Clock
from .logging import get_logger
from .model import BridgeMessage, SentMessage

logger = get_logger(__name__)

Verdict = Literal["pass", "drop"]

DEFAULT_LEDGER_TTL_S = 300.0
# Lark retries a failed delivery for several hours
DEFAULT_DELIVERY_TTL_S = 8 * 3600.0


class LoopGuard:
    """Drops inbound messages the bridge itself produced.

    Bot-authored events are identified by the source event's sender type.
    Messages posted with a linked personal credential look human, so the
    dispatcher records every sent id here and echoes of them are dropped too.
    Platform event ids are tracked as well so a redelivered event is relayed
    at most once.
    """

    def __init__(
        self,
        *,
        ledger_ttl_s: float = DEFAULT_LEDGER_TTL_S,
        delivery_ttl_s: float = DEFAULT_DELIVERY_TTL_S,
        clock: Clock = time.monotonic,
    ) -> None:
        self._ttl_s = ledger_ttl_s
        self._delivery_ttl_s = delivery_ttl_s
        self._clock = clock
        self._sent: dict[tuple[str, str, str], float] = {}
        self._deliveries: dict[tuple[str, str], float] = {}

    def record(self, sent: SentMessage) -> None:
        if not sent.message_id:
            return
        self._prune()
        self._sent[(sent.platform, sent.chat_id, sent.message_id)] = (
            self._clock() + self._ttl_s
        )

    def was_sent_by_bridge(self, platform: str, chat_id: str, message_id: str) -> bool:
        expires_at = self._sent.get((platform, chat_id, message_id))
        if expires_at is None:
            return False
        if self._clock() >= expires_at:
            self._sent.pop((platform, chat_id, message_id), None)
            return False
        return True

    def first_delivery(self, platform: str, event_id: str) -> bool:
        """Record a delivery id; False when it was already seen."""
        now = self._clock()
        key = (platform, event_id)
        expires_at = self._deliveries.get(key)
        if expires_at is not None and now < expires_at:
            return False
        self._prune()
        self._deliveries[key] = now + self._delivery_ttl_s
        return True

    def check(self, message: BridgeMessage) -> Verdict:
        if message.sender_is_automated:
            logger.debug(
                "loop_guard.drop_automated",
                platform=message.source_platform,
                chat_id=message.source_chat_id,
                sender_id=message.sender_id,
            )
            return "drop"
        if message.message_id and self.was_sent_by_bridge(
            message.source_platform, message.source_chat_id, message.message_id
        ):
            logger.debug(
                "loop_guard.drop_echo",
                platform=message.source_platform,
                chat_id=message.source_chat_id,
                message_id=message.message_id,
            )
            return "drop"
        return "pass"

    def _prune(self) -> None:
        now = self._clock()
        for ledger in (self._sent, self._deliveries):
            expired = [key for key, expires_at in ledger.items() if now >= expires_at]
            for key in expired:
                del ledger[key]
