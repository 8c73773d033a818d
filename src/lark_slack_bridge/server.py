from __future__ import annotations

import hashlib
import hmac
import json
import time
from collections.abc import Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from . import __version__
from .bridge import Bridge
from .errors import InvalidVerificationToken
from .logging import get_logger
from .model import RelayOutcome
from .normalize import coerce_payload

logger = get_logger(__name__)

SLACK_SIGNATURE_VERSION = "v0"
DEFAULT_SIGNATURE_TOLERANCE_S = 300.0


def slack_signature(signing_secret: str, timestamp: str, body: bytes) -> str:
    base = f"{SLACK_SIGNATURE_VERSION}:{timestamp}:".encode() + body
    digest = hmac.new(signing_secret.encode(), base, hashlib.sha256).hexdigest()
    return f"{SLACK_SIGNATURE_VERSION}={digest}"


def verify_slack_signature(
    signing_secret: str,
    *,
    timestamp: str | None,
    signature: str | None,
    body: bytes,
    now: float,
    tolerance_s: float = DEFAULT_SIGNATURE_TOLERANCE_S,
) -> bool:
    if not timestamp or not signature:
        return False
    try:
        sent_at = int(timestamp)
    except ValueError:
        return False
    if abs(now - sent_at) > tolerance_s:
        return False
    expected = slack_signature(signing_secret, timestamp, body)
    return hmac.compare_digest(expected, signature)


def outcome_response(outcome: RelayOutcome) -> JSONResponse:
    if outcome.status == "challenge":
        return JSONResponse({"challenge": outcome.challenge})
    if outcome.status == "no_route":
        return JSONResponse({"ok": False, "error": "no_route"}, status_code=404)
    if outcome.status == "send_failed":
        return JSONResponse(
            {"ok": False, "error": "send_failed", "detail": outcome.detail},
            status_code=502,
        )
    body: dict[str, object] = {"ok": True, "status": outcome.status}
    if outcome.sent is not None:
        body["message_id"] = outcome.sent.message_id
        body["chat_id"] = outcome.sent.chat_id
    return JSONResponse(body)


def _unauthorized(error: str) -> JSONResponse:
    return JSONResponse({"ok": False, "error": error}, status_code=401)


def create_app(
    bridge: Bridge,
    *,
    slack_signing_secret: str | None = None,
    signature_tolerance_s: float = DEFAULT_SIGNATURE_TOLERANCE_S,
    clock: Callable[[], float] = time.time,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        await bridge.router.reload()
        yield

    app = FastAPI(title="lark-slack-bridge", version=__version__, lifespan=lifespan)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "version": __version__}

    @app.post("/slack/events")
    async def slack_events(request: Request) -> JSONResponse:
        body = await request.body()
        if slack_signing_secret and not verify_slack_signature(
            slack_signing_secret,
            timestamp=request.headers.get("x-slack-request-timestamp"),
            signature=request.headers.get("x-slack-signature"),
            body=body,
            now=clock(),
            tolerance_s=signature_tolerance_s,
        ):
            logger.warning("slack.invalid_signature")
            return _unauthorized("invalid_signature")

        retry_num = request.headers.get("x-slack-retry-num")
        if retry_num is not None:
            logger.info(
                "slack.retry_ignored",
                retry_num=retry_num,
                reason=request.headers.get("x-slack-retry-reason"),
            )
            return JSONResponse({"ok": True, "status": "ignored"})

        payload = coerce_payload(body)
        if payload is None:
            return JSONResponse({"ok": False, "error": "invalid_payload"}, status_code=400)
        try:
            outcome = await bridge.handle_slack_payload(payload)
        except InvalidVerificationToken:
            return _unauthorized("invalid_token")
        return outcome_response(outcome)

    async def lark_webhook(request: Request) -> JSONResponse:
        body = await request.body()
        try:
            payload = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return JSONResponse({"ok": False, "error": "invalid_json"}, status_code=400)
        if not isinstance(payload, dict):
            return JSONResponse({"ok": False, "error": "invalid_payload"}, status_code=400)
        try:
            outcome = await bridge.handle_lark_payload(payload)
        except InvalidVerificationToken:
            return _unauthorized("invalid_token")
        return outcome_response(outcome)

    app.add_api_route("/lark/webhook", lark_webhook, methods=["POST"])
    app.add_api_route("/lark/events", lark_webhook, methods=["POST"])

    return app
