from __future__ import annotations


class BridgeError(RuntimeError):
    pass


class InvalidVerificationToken(BridgeError):
    def __init__(self, platform: str) -> None:
        super().__init__(f"Invalid {platform} verification token")
        self.platform = platform


class UnsupportedEventSchema(BridgeError):
    pass


class NoRouteAvailable(BridgeError):
    def __init__(self, *, source_platform: str, chat_id: str) -> None:
        super().__init__(
            f"No route for {source_platform} chat {chat_id}; "
            "add a channel mapping or a default destination."
        )
        self.source_platform = source_platform
        self.chat_id = chat_id


class OutboundSendFailed(BridgeError):
    def __init__(
        self,
        message: str,
        *,
        platform: str,
        chat_id: str,
        error: str | None = None,
    ) -> None:
        super().__init__(message)
        self.platform = platform
        self.chat_id = chat_id
        self.error = error


class UpstreamLookupTimeout(BridgeError):
    def __init__(self, cache_name: str, key: object, timeout_s: float) -> None:
        super().__init__(f"{cache_name} lookup for {key!r} timed out after {timeout_s}s")
        self.cache_name = cache_name
        self.key = key
        self.timeout_s = timeout_s
