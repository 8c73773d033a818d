from __future__ import annotations

import os
import re
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal, Sequence

from .channels import ChannelFilter, MessageFilter
from .model import ChannelMapping
from .store import STATE_FILENAME

ENV_CONFIG_PATH = "LARK_SLACK_BRIDGE_CONFIG"
DEFAULT_CONFIG_NAME = "lark-slack-bridge.toml"

# (table, key) <- environment variable
ENV_OVERRIDES: tuple[tuple[str, str, str], ...] = (
    ("slack", "bot_token", "SLACK_BOT_TOKEN"),
    ("slack", "signing_secret", "SLACK_SIGNING_SECRET"),
    ("slack", "app_token", "SLACK_APP_TOKEN"),
    ("slack", "user_token", "SLACK_USER_TOKEN"),
    ("lark", "app_secret", "LARK_APP_SECRET"),
    ("lark", "verification_token", "LARK_VERIFICATION_TOKEN"),
)

SLACK_API_BASE = "https://slack.com/api"
LARK_API_BASE = "https://open.larksuite.com/open-apis"

MAPPING_DIRECTIONS = ("bidirectional", "slack_to_lark", "lark_to_slack")


class ConfigError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class SlackSettings:
    bot_token: str
    signing_secret: str | None = None
    verification_token: str | None = None
    app_token: str | None = None
    socket_mode: bool = False
    team_id: str = ""
    default_channel: str | None = None
    user_token: str | None = None
    connect_channel_ids: tuple[str, ...] = ()
    connect_poll_interval_s: float = 30.0
    base_url: str = SLACK_API_BASE
    timeout_s: float = 30.0

    @classmethod
    def from_config(cls, config: object, *, config_path: Path) -> "SlackSettings":
        if isinstance(config, SlackSettings):
            return config
        if not isinstance(config, dict):
            raise ConfigError(f"Invalid `slack` in {config_path}; expected a table.")
        _reject_unknown(
            config,
            {
                "bot_token",
                "signing_secret",
                "verification_token",
                "app_token",
                "socket_mode",
                "team_id",
                "default_channel",
                "user_token",
                "connect_channel_ids",
                "connect_poll_interval_s",
                "base_url",
                "timeout_s",
            },
            "slack",
            config_path,
        )
        app_token = _optional_str(config, "app_token", None, config_path, label="slack.app_token")
        socket_mode = _optional_bool(
            config, "socket_mode", False, config_path, label="slack.socket_mode"
        )
        if socket_mode and app_token is None:
            raise ConfigError(
                f"Invalid `slack.socket_mode` in {config_path}; "
                "socket mode needs `slack.app_token`."
            )
        user_token = _optional_str(config, "user_token", None, config_path, label="slack.user_token")
        connect_channel_ids = _optional_str_list(
            config, "connect_channel_ids", [], config_path, label="slack.connect_channel_ids"
        )
        if connect_channel_ids and user_token is None:
            raise ConfigError(
                f"Invalid `slack.connect_channel_ids` in {config_path}; "
                "polling Slack Connect channels needs `slack.user_token`."
            )
        return cls(
            bot_token=_require_str(config, "bot_token", label="slack.bot_token", config_path=config_path),
            signing_secret=_optional_str(
                config, "signing_secret", None, config_path, label="slack.signing_secret"
            ),
            verification_token=_optional_str(
                config, "verification_token", None, config_path, label="slack.verification_token"
            ),
            app_token=app_token,
            socket_mode=socket_mode,
            team_id=_optional_str(config, "team_id", "", config_path, label="slack.team_id") or "",
            default_channel=_optional_str(
                config, "default_channel", None, config_path, label="slack.default_channel"
            ),
            user_token=user_token,
            connect_channel_ids=tuple(connect_channel_ids),
            connect_poll_interval_s=_require_number(
                config,
                "connect_poll_interval_s",
                default=30.0,
                label="slack.connect_poll_interval_s",
                config_path=config_path,
                min_value=1.0,
            ),
            base_url=_optional_str(
                config, "base_url", SLACK_API_BASE, config_path, label="slack.base_url"
            )
            or SLACK_API_BASE,
            timeout_s=_require_number(
                config,
                "timeout_s",
                default=30.0,
                label="slack.timeout_s",
                config_path=config_path,
                min_value=1.0,
            ),
        )


@dataclass(frozen=True, slots=True)
class LarkSettings:
    app_id: str
    app_secret: str
    verification_token: str | None = None
    tenant_key: str = ""
    default_chat_id: str | None = None
    user_department_id: str = "0"
    base_url: str = LARK_API_BASE
    timeout_s: float = 30.0

    @classmethod
    def from_config(cls, config: object, *, config_path: Path) -> "LarkSettings":
        if isinstance(config, LarkSettings):
            return config
        if not isinstance(config, dict):
            raise ConfigError(f"Invalid `lark` in {config_path}; expected a table.")
        _reject_unknown(
            config,
            {
                "app_id",
                "app_secret",
                "verification_token",
                "tenant_key",
                "default_chat_id",
                "user_department_id",
                "base_url",
                "timeout_s",
            },
            "lark",
            config_path,
        )
        return cls(
            app_id=_require_str(config, "app_id", label="lark.app_id", config_path=config_path),
            app_secret=_require_str(
                config, "app_secret", label="lark.app_secret", config_path=config_path
            ),
            verification_token=_optional_str(
                config, "verification_token", None, config_path, label="lark.verification_token"
            ),
            tenant_key=_optional_str(config, "tenant_key", "", config_path, label="lark.tenant_key")
            or "",
            default_chat_id=_optional_str(
                config, "default_chat_id", None, config_path, label="lark.default_chat_id"
            ),
            user_department_id=_optional_str(
                config, "user_department_id", "0", config_path, label="lark.user_department_id"
            )
            or "0",
            base_url=_optional_str(
                config, "base_url", LARK_API_BASE, config_path, label="lark.base_url"
            )
            or LARK_API_BASE,
            timeout_s=_require_number(
                config,
                "timeout_s",
                default=30.0,
                label="lark.timeout_s",
                config_path=config_path,
                min_value=1.0,
            ),
        )


@dataclass(frozen=True, slots=True)
class FilterSettings:
    channels: ChannelFilter = field(default_factory=ChannelFilter)
    messages: MessageFilter = field(default_factory=MessageFilter)

    @classmethod
    def from_config(
        cls, config: object, *, platform: str, config_path: Path
    ) -> "FilterSettings":
        if config is None:
            return cls()
        if isinstance(config, FilterSettings):
            return config
        section = f"filters.{platform}"
        if not isinstance(config, dict):
            raise ConfigError(f"Invalid `{section}` in {config_path}; expected a table.")
        _reject_unknown(
            config,
            {
                "exclude_channel_ids",
                "channel_ids",
                "channel_names",
                "include_shared_channels",
                "exclude_user_ids",
                "include_user_ids",
                "include_patterns",
                "exclude_patterns",
            },
            section,
            config_path,
        )

        def _list(key: str) -> list[str]:
            return _optional_str_list(config, key, [], config_path, label=f"{section}.{key}")

        channels = ChannelFilter.build(
            exclude_ids=_list("exclude_channel_ids"),
            include_ids=_list("channel_ids"),
            include_names=_list("channel_names"),
            include_shared=_optional_bool(
                config,
                "include_shared_channels",
                False,
                config_path,
                label=f"{section}.include_shared_channels",
            ),
        )
        include_patterns = _list("include_patterns")
        exclude_patterns = _list("exclude_patterns")
        for key, patterns in (
            ("include_patterns", include_patterns),
            ("exclude_patterns", exclude_patterns),
        ):
            for pattern in patterns:
                try:
                    re.compile(pattern)
                except re.error as exc:
                    raise ConfigError(
                        f"Invalid `{section}.{key}` in {config_path}; "
                        f"bad regular expression {pattern!r}: {exc}."
                    ) from None
        messages = MessageFilter.build(
            exclude_user_ids=_list("exclude_user_ids"),
            include_user_ids=_list("include_user_ids"),
            include_patterns=include_patterns,
            exclude_patterns=exclude_patterns,
        )
        return cls(channels=channels, messages=messages)


@dataclass(frozen=True, slots=True)
class CacheSettings:
    user_ttl_s: float = 300.0
    channel_ttl_s: float = 300.0
    link_ttl_s: float = 60.0
    token_ttl_s: float = 5400.0
    ledger_ttl_s: float = 300.0
    delivery_ttl_s: float = 28800.0
    lookup_timeout_s: float = 5.0
    send_timeout_s: float = 15.0

    @classmethod
    def from_config(cls, config: object, *, config_path: Path) -> "CacheSettings":
        if config is None:
            return cls()
        if not isinstance(config, dict):
            raise ConfigError(f"Invalid `cache` in {config_path}; expected a table.")
        allowed = set(cls.__dataclass_fields__)
        _reject_unknown(config, allowed, "cache", config_path)
        values = {
            key: _require_number(
                config,
                key,
                default=getattr(cls(), key),
                label=f"cache.{key}",
                config_path=config_path,
                min_value=0.1,
            )
            for key in allowed
        }
        return cls(**values)


@dataclass(frozen=True, slots=True)
class ServerSettings:
    host: str = "127.0.0.1"
    port: int = 8080
    signature_tolerance_s: float = 300.0

    @classmethod
    def from_config(cls, config: object, *, config_path: Path) -> "ServerSettings":
        if config is None:
            return cls()
        if not isinstance(config, dict):
            raise ConfigError(f"Invalid `server` in {config_path}; expected a table.")
        _reject_unknown(config, {"host", "port", "signature_tolerance_s"}, "server", config_path)
        port = config.get("port", 8080)
        if not isinstance(port, int) or isinstance(port, bool) or not 0 < port < 65536:
            raise ConfigError(
                f"Invalid `server.port` in {config_path}; expected an integer port."
            )
        return cls(
            host=_optional_str(config, "host", "127.0.0.1", config_path, label="server.host")
            or "127.0.0.1",
            port=port,
            signature_tolerance_s=_require_number(
                config,
                "signature_tolerance_s",
                default=300.0,
                label="server.signature_tolerance_s",
                config_path=config_path,
                min_value=1.0,
            ),
        )


@dataclass(frozen=True, slots=True)
class StoreSettings:
    backend: Literal["json", "memory"] = "json"
    path: Path | None = None

    @classmethod
    def from_config(cls, config: object, *, config_path: Path) -> "StoreSettings":
        default_path = config_path.with_name(STATE_FILENAME)
        if config is None:
            return cls(path=default_path)
        if not isinstance(config, dict):
            raise ConfigError(f"Invalid `store` in {config_path}; expected a table.")
        _reject_unknown(config, {"backend", "path"}, "store", config_path)
        backend = _optional_str(config, "backend", "json", config_path, label="store.backend")
        if backend not in {"json", "memory"}:
            raise ConfigError(
                f"Invalid `store.backend` in {config_path}; expected 'json' or 'memory'."
            )
        raw_path = _optional_str(config, "path", None, config_path, label="store.path")
        path = default_path
        if raw_path is not None:
            path = Path(raw_path).expanduser()
            if not path.is_absolute():
                path = config_path.parent / path
        return cls(backend=backend, path=path)  # type: ignore[arg-type]


@dataclass(frozen=True, slots=True)
class BridgeSettings:
    slack: SlackSettings
    lark: LarkSettings
    slack_filters: FilterSettings = field(default_factory=FilterSettings)
    lark_filters: FilterSettings = field(default_factory=FilterSettings)
    channel_mappings: tuple[ChannelMapping, ...] = ()
    cache: CacheSettings = field(default_factory=CacheSettings)
    server: ServerSettings = field(default_factory=ServerSettings)
    store: StoreSettings = field(default_factory=StoreSettings)
    debug: bool = False

    @classmethod
    def from_config(cls, config: object, *, config_path: Path) -> "BridgeSettings":
        if not isinstance(config, dict):
            raise ConfigError(f"Invalid config in {config_path}; expected a table.")
        _reject_unknown(
            config,
            {
                "slack",
                "lark",
                "filters",
                "channel_mappings",
                "cache",
                "server",
                "store",
                "debug",
            },
            "config",
            config_path,
        )
        if "slack" not in config:
            raise ConfigError(f"Missing `slack` table in {config_path}.")
        if "lark" not in config:
            raise ConfigError(f"Missing `lark` table in {config_path}.")
        filters = config.get("filters") or {}
        if not isinstance(filters, dict):
            raise ConfigError(f"Invalid `filters` in {config_path}; expected a table.")
        _reject_unknown(filters, {"slack", "lark"}, "filters", config_path)
        return cls(
            slack=SlackSettings.from_config(config["slack"], config_path=config_path),
            lark=LarkSettings.from_config(config["lark"], config_path=config_path),
            slack_filters=FilterSettings.from_config(
                filters.get("slack"), platform="slack", config_path=config_path
            ),
            lark_filters=FilterSettings.from_config(
                filters.get("lark"), platform="lark", config_path=config_path
            ),
            channel_mappings=_channel_mappings(config.get("channel_mappings"), config_path),
            cache=CacheSettings.from_config(config.get("cache"), config_path=config_path),
            server=ServerSettings.from_config(config.get("server"), config_path=config_path),
            store=StoreSettings.from_config(config.get("store"), config_path=config_path),
            debug=_optional_bool(config, "debug", False, config_path, label="debug"),
        )

    def filters_for(self, platform: str) -> FilterSettings:
        return self.slack_filters if platform == "slack" else self.lark_filters

    def default_destination(self, platform: str) -> str | None:
        if platform == "slack":
            return self.slack.default_channel
        return self.lark.default_chat_id


def _channel_mappings(value: object, config_path: Path) -> tuple[ChannelMapping, ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        raise ConfigError(
            f"Invalid `channel_mappings` in {config_path}; expected a list of tables."
        )
    mappings: list[ChannelMapping] = []
    for idx, raw in enumerate(value, start=1):
        label = f"channel_mappings[{idx}]"
        if not isinstance(raw, dict):
            raise ConfigError(f"Invalid `{label}` in {config_path}; expected a table.")
        _reject_unknown(raw, {"slack_channel_id", "lark_chat_id", "direction"}, label, config_path)
        slack_channel_id = _require_str(
            raw, "slack_channel_id", label=f"{label}.slack_channel_id", config_path=config_path
        )
        lark_chat_id = _require_str(
            raw, "lark_chat_id", label=f"{label}.lark_chat_id", config_path=config_path
        )
        direction = _optional_str(
            raw, "direction", "bidirectional", config_path, label=f"{label}.direction"
        )
        direction = (direction or "bidirectional").replace("-", "_")
        if direction not in MAPPING_DIRECTIONS:
            raise ConfigError(
                f"Invalid `{label}.direction` in {config_path}; expected one of "
                f"{', '.join(MAPPING_DIRECTIONS)}."
            )
        if direction == "lark_to_slack":
            mapping = ChannelMapping(
                source_platform="lark",
                source_channel_id=lark_chat_id,
                target_platform="slack",
                target_channel_id=slack_channel_id,
                bidirectional=False,
            )
        else:
            mapping = ChannelMapping(
                source_platform="slack",
                source_channel_id=slack_channel_id,
                target_platform="lark",
                target_channel_id=lark_chat_id,
                bidirectional=direction == "bidirectional",
            )
        mappings.append(mapping)
    return tuple(mappings)


def apply_env_overrides(
    config: dict[str, Any], env: Mapping[str, str] | None = None
) -> dict[str, Any]:
    environ = os.environ if env is None else env
    merged = dict(config)
    for table, key, variable in ENV_OVERRIDES:
        value = environ.get(variable)
        if not value or not value.strip():
            continue
        section = merged.get(table)
        section = dict(section) if isinstance(section, dict) else {}
        section[key] = value.strip()
        merged[table] = section
    return merged


def resolve_config_path(
    path: str | Path | None = None, env: Mapping[str, str] | None = None
) -> Path:
    environ = os.environ if env is None else env
    if path:
        return Path(path).expanduser()
    from_env = environ.get(ENV_CONFIG_PATH)
    if from_env and from_env.strip():
        return Path(from_env.strip()).expanduser()
    return Path.cwd() / DEFAULT_CONFIG_NAME


def read_config(cfg_path: Path) -> dict:
    try:
        raw = cfg_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ConfigError(f"Missing config file {cfg_path}.") from None
    except OSError as e:
        raise ConfigError(f"Failed to read config file {cfg_path}: {e}") from e
    try:
        return tomllib.loads(raw)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Malformed TOML in {cfg_path}: {e}") from None


def load_settings(
    path: str | Path | None = None, env: Mapping[str, str] | None = None
) -> tuple[BridgeSettings, Path]:
    cfg_path = resolve_config_path(path, env)
    config = apply_env_overrides(read_config(cfg_path), env)
    return BridgeSettings.from_config(config, config_path=cfg_path), cfg_path


def _reject_unknown(
    config: dict[str, Any], allowed: set[str], section: str, config_path: Path
) -> None:
    unknown_keys = set(config) - allowed
    if unknown_keys:
        unknown = ", ".join(sorted(unknown_keys))
        raise ConfigError(
            f"Invalid `{section}` in {config_path}; unknown keys: {unknown}."
        )


def _require_str(
    config: dict[str, Any], key: str, *, label: str, config_path: Path
) -> str:
    value = config.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(
            f"Invalid `{label}` in {config_path}; expected a non-empty string."
        )
    return value.strip()


def _optional_str(
    config: dict[str, Any],
    key: str,
    default: str | None,
    config_path: Path,
    *,
    label: str,
) -> str | None:
    if key not in config:
        return default
    value = config.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"Invalid `{label}` in {config_path}; expected a string.")
    cleaned = value.strip()
    return cleaned or None


def _optional_bool(
    config: dict[str, Any],
    key: str,
    default: bool,
    config_path: Path,
    *,
    label: str,
) -> bool:
    if key not in config:
        return default
    value = config.get(key)
    if isinstance(value, bool):
        return value
    raise ConfigError(f"Invalid `{label}` in {config_path}; expected a boolean.")


def _optional_str_list(
    config: dict[str, Any],
    key: str,
    default: Sequence[str],
    config_path: Path,
    *,
    label: str,
) -> list[str]:
    if key not in config:
        return list(default)
    value = config.get(key)
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ConfigError(f"Invalid `{label}` in {config_path}; expected a list of strings.")
    return [item.strip() for item in value if item.strip()]


def _require_number(
    config: dict[str, Any],
    key: str,
    *,
    default: float,
    label: str,
    config_path: Path,
    min_value: float | None = None,
) -> float:
    value = config.get(key, default)
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        raise ConfigError(f"Invalid `{label}` in {config_path}; expected a number.")
    value = float(value)
    if min_value is not None and value < min_value:
        raise ConfigError(
            f"Invalid `{label}` in {config_path}; expected >= {min_value}."
        )
    return value
