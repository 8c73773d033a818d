from __future__ import annotations

import json
from typing import Any

import anyio
import websockets
from websockets.exceptions import WebSocketException

from .bridge import Bridge
from .errors import InvalidVerificationToken
from .logging import get_logger
from .model import RelayOutcome
from .slack_client import SLACK_API_BASE, SlackApiError, open_socket_url

logger = get_logger(__name__)

MAX_BACKOFF_S = 30.0


def envelope_ack(envelope: dict[str, Any]) -> str | None:
    envelope_id = envelope.get("envelope_id")
    if isinstance(envelope_id, str) and envelope_id:
        return json.dumps({"envelope_id": envelope_id})
    return None


async def process_envelope(bridge: Bridge, envelope: dict[str, Any]) -> RelayOutcome | None:
    if envelope.get("type") != "events_api":
        return None
    payload = envelope.get("payload")
    if not isinstance(payload, dict):
        return None
    if envelope.get("retry_attempt"):
        logger.info("slack.socket.retry_ignored", retry_attempt=envelope.get("retry_attempt"))
        return None
    try:
        outcome = await bridge.handle_slack_payload(payload)
    except InvalidVerificationToken:
        logger.warning("slack.socket.invalid_token")
        return None
    if not outcome.ok:
        logger.warning(
            "slack.socket.relay_failed",
            status=outcome.status,
            detail=outcome.detail,
        )
    return outcome


async def _safe_process(bridge: Bridge, envelope: dict[str, Any]) -> None:
    try:
        await process_envelope(bridge, envelope)
    except Exception as exc:  # noqa: BLE001
        logger.exception(
            "slack.socket.handler_failed",
            error=str(exc),
            error_type=exc.__class__.__name__,
        )


async def run_socket_loop(
    bridge: Bridge,
    app_token: str,
    *,
    base_url: str = SLACK_API_BASE,
) -> None:
    backoff_s = 1.0

    async with anyio.create_task_group() as tg:
        while True:
            try:
                socket_url = await open_socket_url(app_token, base_url=base_url)
            except SlackApiError as exc:
                logger.warning("slack.socket.open_failed", error=str(exc))
                await anyio.sleep(backoff_s)
                backoff_s = min(backoff_s * 2, MAX_BACKOFF_S)
                continue

            try:
                async with websockets.connect(
                    socket_url,
                    ping_interval=10,
                    ping_timeout=10,
                ) as ws:
                    logger.info("slack.socket.connected")
                    backoff_s = 1.0
                    while True:
                        raw = await ws.recv()
                        if isinstance(raw, bytes):
                            raw = raw.decode("utf-8", "ignore")
                        try:
                            envelope = json.loads(raw)
                        except json.JSONDecodeError:
                            logger.warning("slack.socket.bad_payload")
                            continue
                        if not isinstance(envelope, dict):
                            continue

                        ack = envelope_ack(envelope)
                        if ack is not None:
                            await ws.send(ack)

                        msg_type = envelope.get("type")
                        if msg_type == "disconnect":
                            logger.info(
                                "slack.socket.disconnect",
                                reason=envelope.get("reason"),
                            )
                            break
                        if msg_type != "events_api":
                            continue
                        tg.start_soon(_safe_process, bridge, envelope)
            except WebSocketException as exc:
                logger.warning("slack.socket_failed", error=str(exc))
            except OSError as exc:
                logger.warning("slack.socket_failed", error=str(exc))

            await anyio.sleep(backoff_s)
