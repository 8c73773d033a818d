from __future__ import annotations

from collections.abc import Mapping

import anyio

from .errors import OutboundSendFailed
from .logging import get_logger
from .loop_guard import LoopGuard
from .model import DefaultIdentity, LinkedIdentity, PlatformClient, Route, SendAs, SentMessage

logger = get_logger(__name__)

DEFAULT_SEND_TIMEOUT_S = 15.0


def compose_text(text: str, route: Route, send_as: SendAs) -> str:
    lines: list[str] = []
    if isinstance(send_as, DefaultIdentity):
        lines.append(send_as.display_prefix)
    if route.notice:
        lines.append(route.notice)
    lines.append(text)
    return "\n".join(lines)


class Dispatcher:
    def __init__(
        self,
        clients: Mapping[str, PlatformClient],
        *,
        loop_guard: LoopGuard | None = None,
        timeout_s: float = DEFAULT_SEND_TIMEOUT_S,
    ) -> None:
        self._clients = dict(clients)
        self._loop_guard = loop_guard
        self._timeout_s = timeout_s

    async def dispatch(
        self,
        target_platform: str,
        route: Route,
        text: str,
        send_as: SendAs,
    ) -> SentMessage:
        client = self._clients.get(target_platform)
        if client is None:
            raise OutboundSendFailed(
                f"No {target_platform} client configured",
                platform=target_platform,
                chat_id=route.destination_chat_id,
            )
        body = compose_text(text, route, send_as)
        credential = send_as.credential if isinstance(send_as, LinkedIdentity) else None
        try:
            with anyio.fail_after(self._timeout_s):
                sent = await client.send_message(
                    route.destination_chat_id,
                    body,
                    thread_id=route.destination_thread_id,
                    credential=credential,
                )
        except TimeoutError:
            logger.warning(
                "dispatch.timeout",
                platform=target_platform,
                chat_id=route.destination_chat_id,
                timeout_s=self._timeout_s,
            )
            raise OutboundSendFailed(
                f"{target_platform} send timed out after {self._timeout_s}s",
                platform=target_platform,
                chat_id=route.destination_chat_id,
                error="timeout",
            ) from None
        except Exception as exc:  # noqa: BLE001
            error = getattr(exc, "error", None) or getattr(exc, "code", None)
            logger.warning(
                "dispatch.failed",
                platform=target_platform,
                chat_id=route.destination_chat_id,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            raise OutboundSendFailed(
                f"{target_platform} send failed: {exc}",
                platform=target_platform,
                chat_id=route.destination_chat_id,
                error=str(error) if error is not None else None,
            ) from exc

        if self._loop_guard is not None:
            self._loop_guard.record(sent)
        logger.info(
            "dispatch.sent",
            platform=target_platform,
            chat_id=sent.chat_id,
            message_id=sent.message_id,
            route=route.source,
            linked=isinstance(send_as, LinkedIdentity),
        )
        return sent
