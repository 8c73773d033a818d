"""Slack Connect channel poller.

Events from channels shared with another organization do not reach the app,
so their history is read with a member's user token and relayed through the
bridge. The last relayed ``ts`` is kept per channel and per thread. Both are
seeded before the first poll so existing history is never replayed.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Protocol

import anyio

from .bridge import Bridge
from .config import SlackSettings
from .logging import get_logger
from .model import BridgeMessage, NotAMessageEvent, RelayOutcome
from .normalize import SlackNormalizer
from .slack_client import SlackApiError

logger = get_logger(__name__)

HISTORY_LIMIT = 100
THREAD_LOOKBACK = 20
DEFAULT_POLL_INTERVAL_S = 30.0


class HistoryClient(Protocol):
    async def conversations_history(
        self,
        channel_id: str,
        *,
        oldest: str | None = None,
        limit: int = 100,
        token: str | None = None,
    ) -> list[dict[str, Any]]: ...

    async def conversations_replies(
        self,
        channel_id: str,
        thread_ts: str,
        *,
        oldest: str | None = None,
        limit: int = 100,
        token: str | None = None,
    ) -> list[dict[str, Any]]: ...


def ts_key(ts: object) -> tuple[int, int]:
    """Orderable form of a Slack ``ts`` string (seconds, microseconds)."""
    if not isinstance(ts, str):
        return (0, 0)
    seconds, _, fraction = ts.partition(".")
    try:
        return (int(seconds), int(fraction.ljust(6, "0")[:6]))
    except ValueError:
        return (0, 0)


def newer_than(messages: Sequence[dict[str, Any]], last_ts: str) -> list[dict[str, Any]]:
    floor = ts_key(last_ts)
    fresh = [
        message
        for message in messages
        if isinstance(message.get("ts"), str) and ts_key(message["ts"]) > floor
    ]
    fresh.sort(key=lambda message: ts_key(message["ts"]))
    return fresh


def _is_reply(message: dict[str, Any]) -> bool:
    thread_ts = message.get("thread_ts")
    return isinstance(thread_ts, str) and thread_ts != message.get("ts")


class SlackConnectPoller:
    def __init__(
        self,
        bridge: Bridge,
        client: HistoryClient,
        normalizer: SlackNormalizer,
        channel_ids: Sequence[str],
        *,
        user_token: str,
        interval_s: float = DEFAULT_POLL_INTERVAL_S,
    ) -> None:
        self._bridge = bridge
        self._client = client
        self._normalizer = normalizer
        self._channel_ids = tuple(channel_ids)
        self._user_token = user_token
        self._interval_s = interval_s
        self._channel_ts: dict[str, str] = {}
        self._thread_ts: dict[tuple[str, str], str] = {}

    @property
    def channel_ids(self) -> tuple[str, ...]:
        return self._channel_ids

    def last_seen(self, channel_id: str) -> str | None:
        return self._channel_ts.get(channel_id)

    async def seed(self) -> None:
        for channel_id in self._channel_ids:
            await self._seed_channel(channel_id)

    async def _seed_channel(self, channel_id: str) -> None:
        try:
            messages = await self._client.conversations_history(
                channel_id, limit=THREAD_LOOKBACK, token=self._user_token
            )
        except SlackApiError as exc:
            logger.warning("slack.connect.seed_failed", channel_id=channel_id, error=str(exc))
            return
        stamps = [m["ts"] for m in messages if isinstance(m.get("ts"), str)]
        self._channel_ts[channel_id] = max(stamps, key=ts_key, default="0")
        for message in messages:
            thread_ts = message.get("thread_ts")
            if not isinstance(thread_ts, str) or not message.get("reply_count"):
                continue
            latest_reply = message.get("latest_reply")
            self._thread_ts[(channel_id, thread_ts)] = (
                latest_reply if isinstance(latest_reply, str) else thread_ts
            )
        logger.info(
            "slack.connect.seeded",
            channel_id=channel_id,
            last_ts=self._channel_ts[channel_id],
        )

    async def poll_once(self) -> list[RelayOutcome]:
        outcomes: list[RelayOutcome] = []
        for channel_id in self._channel_ids:
            try:
                outcomes.extend(await self.poll_channel(channel_id))
            except SlackApiError as exc:
                logger.warning("slack.connect.poll_failed", channel_id=channel_id, error=str(exc))
        return outcomes

    async def poll_channel(self, channel_id: str) -> list[RelayOutcome]:
        last_ts = self._channel_ts.get(channel_id)
        if last_ts is None:
            await self._seed_channel(channel_id)
            return []
        messages = await self._client.conversations_history(
            channel_id, oldest=last_ts, limit=HISTORY_LIMIT, token=self._user_token
        )
        outcomes: list[RelayOutcome] = []
        for message in newer_than(messages, last_ts):
            self._channel_ts[channel_id] = message["ts"]
            if _is_reply(message):
                # broadcast replies are picked up with their thread
                continue
            outcomes.append(await self._relay(channel_id, message))
        outcomes.extend(await self._poll_threads(channel_id))
        return outcomes

    async def _poll_threads(self, channel_id: str) -> list[RelayOutcome]:
        recent = await self._client.conversations_history(
            channel_id, limit=THREAD_LOOKBACK, token=self._user_token
        )
        outcomes: list[RelayOutcome] = []
        for parent in recent:
            thread_ts = parent.get("thread_ts")
            if not isinstance(thread_ts, str) or not parent.get("reply_count"):
                continue
            key = (channel_id, thread_ts)
            last_reply = self._thread_ts.get(key, thread_ts)
            latest_reply = parent.get("latest_reply")
            if isinstance(latest_reply, str) and ts_key(latest_reply) <= ts_key(last_reply):
                continue
            try:
                replies = await self._client.conversations_replies(
                    channel_id,
                    thread_ts,
                    oldest=last_reply,
                    limit=HISTORY_LIMIT,
                    token=self._user_token,
                )
            except SlackApiError as exc:
                logger.info(
                    "slack.connect.replies_failed",
                    channel_id=channel_id,
                    thread_ts=thread_ts,
                    error=str(exc),
                )
                continue
            for reply in newer_than(replies, last_reply):
                self._thread_ts[key] = reply["ts"]
                outcomes.append(await self._relay(channel_id, reply))
        return outcomes

    async def _relay(self, channel_id: str, raw: dict[str, Any]) -> RelayOutcome:
        event = await self._normalizer.normalize_history(channel_id, raw)
        if isinstance(event, NotAMessageEvent):
            return RelayOutcome(status="ignored", detail=event.reason)
        if not isinstance(event, BridgeMessage):
            return RelayOutcome(status="ignored")
        outcome = await self._bridge.relay(event)
        if not outcome.ok:
            logger.warning(
                "slack.connect.relay_failed",
                channel_id=channel_id,
                ts=raw.get("ts"),
                status=outcome.status,
                detail=outcome.detail,
            )
        return outcome

    async def run(self) -> None:
        await self.seed()
        logger.info(
            "slack.connect.started",
            channels=len(self._channel_ids),
            interval_s=self._interval_s,
        )
        while True:
            await anyio.sleep(self._interval_s)
            try:
                await self.poll_once()
            except Exception as exc:  # noqa: BLE001
                logger.exception(
                    "slack.connect.poll_crashed",
                    error=str(exc),
                    error_type=exc.__class__.__name__,
                )


def build_connect_poller(bridge: Bridge, settings: SlackSettings) -> SlackConnectPoller | None:
    if not settings.connect_channel_ids or not settings.user_token:
        return None
    normalizer = bridge.normalizers.get("slack")
    if not isinstance(normalizer, SlackNormalizer):
        return None
    return SlackConnectPoller(
        bridge,
        bridge.clients["slack"],
        normalizer,
        settings.connect_channel_ids,
        user_token=settings.user_token,
        interval_s=settings.connect_poll_interval_s,
    )
