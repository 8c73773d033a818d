from __future__ import annotations

import json
import os
from collections.abc import Iterable
from dataclasses import asdict
from pathlib import Path
from typing import Any, Protocol

import anyio

from .logging import get_logger
from .model import ChannelMapping, UserLink

logger = get_logger(__name__)

STATE_VERSION = 1
STATE_FILENAME = "lark_slack_bridge_state.json"
CHANNEL_MAPPINGS_KEY = "channel_mappings"
PLATFORMS = ("slack", "lark")


class KeyValueStore(Protocol):
    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def keys(self, prefix: str = "") -> list[str]: ...


def link_key(platform: str, user_id: str) -> str:
    return f"link:{platform}:{user_id}"


def _atomic_write_json(path: Path, payload: object) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    data = json.dumps(
        payload,
        ensure_ascii=False,
        sort_keys=True,
        indent=2,
    )
    tmp_path = path.with_suffix(f"{path.suffix}.tmp")
    tmp_path.write_text(f"{data}\n", encoding="utf-8")
    os.replace(tmp_path, path)


class MemoryStore:
    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._values: dict[str, Any] = dict(initial or {})

    async def get(self, key: str) -> Any | None:
        return self._values.get(key)

    async def set(self, key: str, value: Any) -> None:
        self._values[key] = value

    async def delete(self, key: str) -> None:
        self._values.pop(key, None)

    async def keys(self, prefix: str = "") -> list[str]:
        return sorted(key for key in self._values if key.startswith(prefix))


class JsonFileStore:
    """Key-value records in one JSON file, reloaded when the file changes on disk."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = anyio.Lock()
        self._loaded = False
        self._mtime_ns: int | None = None
        self._values: dict[str, Any] = {}

    @property
    def path(self) -> Path:
        return self._path

    def _stat_mtime_ns(self) -> int | None:
        try:
            return self._path.stat().st_mtime_ns
        except FileNotFoundError:
            return None

    def _load_locked(self) -> None:
        self._loaded = True
        self._mtime_ns = self._stat_mtime_ns()
        if self._mtime_ns is None:
            self._values = {}
            return
        try:
            raw = self._path.read_text(encoding="utf-8")
            payload = json.loads(raw)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "store.load_failed",
                path=str(self._path),
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            self._values = {}
            return
        if not isinstance(payload, dict) or payload.get("version") != STATE_VERSION:
            logger.warning(
                "store.version_mismatch",
                path=str(self._path),
                version=payload.get("version") if isinstance(payload, dict) else None,
                expected=STATE_VERSION,
            )
            self._values = {}
            return
        values = payload.get("values")
        self._values = dict(values) if isinstance(values, dict) else {}

    def _reload_locked_if_needed(self) -> None:
        current = self._stat_mtime_ns()
        if self._loaded and current == self._mtime_ns:
            return
        self._load_locked()

    def _save_locked(self) -> None:
        _atomic_write_json(self._path, {"version": STATE_VERSION, "values": self._values})
        self._mtime_ns = self._stat_mtime_ns()

    async def get(self, key: str) -> Any | None:
        async with self._lock:
            self._reload_locked_if_needed()
            return self._values.get(key)

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            self._reload_locked_if_needed()
            self._values[key] = value
            self._save_locked()

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._reload_locked_if_needed()
            if key not in self._values:
                return
            self._values.pop(key, None)
            self._save_locked()

    async def keys(self, prefix: str = "") -> list[str]:
        async with self._lock:
            self._reload_locked_if_needed()
            return sorted(key for key in self._values if key.startswith(prefix))


def _decode_link(payload: object) -> UserLink | None:
    if not isinstance(payload, dict):
        return None
    source_platform = payload.get("source_platform")
    if source_platform not in PLATFORMS:
        return None
    values = {}
    for key in ("platform_a_id", "platform_b_id", "platform_b_credential"):
        value = payload.get(key)
        if not isinstance(value, str) or not value.strip():
            return None
        values[key] = value
    display_name = payload.get("display_name")
    default_channel = payload.get("default_channel")
    return UserLink(
        source_platform=source_platform,
        display_name=display_name if isinstance(display_name, str) and display_name else None,
        default_channel=default_channel
        if isinstance(default_channel, str) and default_channel
        else None,
        **values,
    )


def _decode_mapping(payload: object) -> ChannelMapping | None:
    if not isinstance(payload, dict):
        return None
    source_platform = payload.get("source_platform")
    target_platform = payload.get("target_platform")
    if source_platform not in PLATFORMS or target_platform not in PLATFORMS:
        return None
    source_channel_id = payload.get("source_channel_id")
    target_channel_id = payload.get("target_channel_id")
    if not isinstance(source_channel_id, str) or not source_channel_id:
        return None
    if not isinstance(target_channel_id, str) or not target_channel_id:
        return None
    return ChannelMapping(
        source_platform=source_platform,
        source_channel_id=source_channel_id,
        target_platform=target_platform,
        target_channel_id=target_channel_id,
        bidirectional=payload.get("bidirectional", True) is not False,
    )


class UserLinkStore:
    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    async def get(self, platform: str, user_id: str) -> UserLink | None:
        payload = await self._store.get(link_key(platform, user_id))
        if payload is None:
            return None
        link = _decode_link(payload)
        if link is None:
            logger.warning("store.bad_link_record", platform=platform, user_id=user_id)
        return link

    async def put(self, link: UserLink) -> None:
        await self._store.set(link_key(link.source_platform, link.platform_a_id), asdict(link))

    async def delete(self, platform: str, user_id: str) -> None:
        await self._store.delete(link_key(platform, user_id))

    async def list(self, platform: str | None = None) -> list[UserLink]:
        prefix = "link:" if platform is None else f"link:{platform}:"
        links: list[UserLink] = []
        for key in await self._store.keys(prefix):
            link = _decode_link(await self._store.get(key))
            if link is not None:
                links.append(link)
        return links


async def load_channel_mappings(store: KeyValueStore) -> tuple[ChannelMapping, ...]:
    payload = await store.get(CHANNEL_MAPPINGS_KEY)
    if payload is None:
        return ()
    if not isinstance(payload, list):
        logger.warning("store.bad_channel_mappings", type=type(payload).__name__)
        return ()
    mappings: list[ChannelMapping] = []
    for entry in payload:
        mapping = _decode_mapping(entry)
        if mapping is None:
            logger.warning("store.bad_channel_mapping", entry=str(entry)[:200])
            continue
        mappings.append(mapping)
    return tuple(mappings)


async def save_channel_mappings(
    store: KeyValueStore, mappings: Iterable[ChannelMapping]
) -> None:
    await store.set(CHANNEL_MAPPINGS_KEY, [asdict(mapping) for mapping in mappings])
