from __future__ import annotations

from functools import partial
from pathlib import Path

import anyio
import typer
import uvicorn

from . import __version__
from .bridge import build_bridge, open_store
from .config import BridgeSettings, ConfigError, load_settings
from .connect_poller import build_connect_poller
from .errors import UpstreamLookupTimeout
from .lark_client import LarkApiError, LarkClient
from .logging import get_logger, setup_logging
from .model import UserLink, other_platform
from .server import create_app
from .slack_client import SlackApiError, SlackClient
from .socket_mode import run_socket_loop
from .store import UserLinkStore

logger = get_logger(__name__)

PLATFORM_CHOICES = ("slack", "lark")


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(__version__)
        raise typer.Exit()


def _load(config: Path | None) -> tuple[BridgeSettings, Path]:
    try:
        return load_settings(config)
    except ConfigError as e:
        typer.echo(f"error: {e}", err=True)
        raise typer.Exit(code=1) from e


def _platform(value: str) -> str:
    platform = value.strip().lower()
    if platform not in PLATFORM_CHOICES:
        typer.echo(f"error: platform must be one of {', '.join(PLATFORM_CHOICES)}", err=True)
        raise typer.Exit(code=1)
    return platform


async def _serve(settings: BridgeSettings, *, host: str, port: int) -> None:
    bridge = build_bridge(settings)
    poller = build_connect_poller(bridge, settings.slack)
    app = create_app(
        bridge,
        slack_signing_secret=settings.slack.signing_secret,
        signature_tolerance_s=settings.server.signature_tolerance_s,
    )
    server = uvicorn.Server(
        uvicorn.Config(app, host=host, port=port, log_config=None, access_log=False)
    )
    logger.info(
        "bridge.starting",
        host=host,
        port=port,
        socket_mode=settings.slack.socket_mode,
        connect_channels=len(settings.slack.connect_channel_ids),
    )
    try:
        async with anyio.create_task_group() as tg:
            if settings.slack.socket_mode and settings.slack.app_token:
                tg.start_soon(
                    partial(
                        run_socket_loop,
                        bridge,
                        settings.slack.app_token,
                        base_url=settings.slack.base_url,
                    )
                )
            if poller is not None:
                tg.start_soon(poller.run)
            await server.serve()
            tg.cancel_scope.cancel()
    finally:
        await bridge.aclose()


def serve(
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to the TOML config."),
    host: str | None = typer.Option(None, "--host", help="Override server.host."),
    port: int | None = typer.Option(None, "--port", help="Override server.port."),
    debug: bool = typer.Option(False, "--debug/--no-debug", help="Human-readable debug logs."),
) -> None:
    """Run the webhook server (and Slack Socket Mode when enabled)."""
    settings, cfg_path = _load(config)
    setup_logging(debug=debug or settings.debug)
    logger.info("config.loaded", path=str(cfg_path))
    try:
        anyio.run(
            partial(
                _serve,
                settings,
                host=host or settings.server.host,
                port=port or settings.server.port,
            )
        )
    except KeyboardInterrupt:
        raise typer.Exit(code=130) from None


async def _link(settings: BridgeSettings, link: UserLink) -> None:
    await UserLinkStore(open_store(settings)).put(link)


def link(
    platform: str = typer.Argument(..., help="Platform the sender writes on (slack or lark)."),
    user_id: str = typer.Argument(..., help="Sender's user id on that platform."),
    target_user_id: str = typer.Argument(..., help="Same person's user id on the other platform."),
    credential: str = typer.Option(
        ...,
        "--credential",
        prompt=True,
        hide_input=True,
        help="Token to post with on the other platform.",
    ),
    name: str | None = typer.Option(None, "--name", help="Display name for logs."),
    default_channel: str | None = typer.Option(
        None, "--default-channel", help="Destination when no mapping or directive applies."
    ),
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to the TOML config."),
) -> None:
    """Link a person's accounts so their messages are sent as themselves."""
    settings, _ = _load(config)
    source = _platform(platform)
    record = UserLink(
        source_platform=source,  # type: ignore[arg-type]
        platform_a_id=user_id.strip(),
        platform_b_id=target_user_id.strip(),
        platform_b_credential=credential.strip(),
        display_name=name,
        default_channel=default_channel,
    )
    anyio.run(_link, settings, record)
    typer.echo(f"linked {source}:{record.platform_a_id} -> {other_platform(source)}:{record.platform_b_id}")


async def _unlink(settings: BridgeSettings, platform: str, user_id: str) -> bool:
    links = UserLinkStore(open_store(settings))
    if await links.get(platform, user_id) is None:
        return False
    await links.delete(platform, user_id)
    return True


def unlink(
    platform: str = typer.Argument(..., help="Platform the sender writes on (slack or lark)."),
    user_id: str = typer.Argument(..., help="Sender's user id on that platform."),
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to the TOML config."),
) -> None:
    """Remove a person's account link."""
    settings, _ = _load(config)
    source = _platform(platform)
    if not anyio.run(_unlink, settings, source, user_id.strip()):
        typer.echo(f"error: no link for {source}:{user_id}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"unlinked {source}:{user_id}")


async def _check_remote(settings: BridgeSettings) -> list[str]:
    problems: list[str] = []
    slack = SlackClient(
        settings.slack.bot_token,
        base_url=settings.slack.base_url,
        timeout_s=settings.slack.timeout_s,
    )
    lark = LarkClient(
        settings.lark.app_id,
        settings.lark.app_secret,
        base_url=settings.lark.base_url,
        timeout_s=settings.lark.timeout_s,
    )
    try:
        try:
            auth = await slack.auth_test()
            typer.echo(f"slack: ok (user {auth.user_id}, team {auth.team_id})")
        except SlackApiError as exc:
            problems.append(f"slack: {exc}")
        try:
            await lark.tenant_token()
            typer.echo("lark: ok (tenant token issued)")
        except (LarkApiError, UpstreamLookupTimeout) as exc:
            problems.append(f"lark: {exc}")
    finally:
        await slack.close()
        await lark.close()
    return problems


def check(
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to the TOML config."),
    remote: bool = typer.Option(
        False, "--remote/--no-remote", help="Also verify credentials against both APIs."
    ),
) -> None:
    """Validate the config file and optionally the platform credentials."""
    settings, cfg_path = _load(config)
    typer.echo(f"config: {cfg_path}")
    typer.echo(f"channel mappings: {len(settings.channel_mappings)}")
    typer.echo(f"slack default channel: {settings.slack.default_channel or '-'}")
    typer.echo(f"lark default chat: {settings.lark.default_chat_id or '-'}")
    typer.echo(f"slack socket mode: {'on' if settings.slack.socket_mode else 'off'}")
    typer.echo(f"slack connect channels: {len(settings.slack.connect_channel_ids)}")
    if not settings.slack.signing_secret:
        typer.echo("warning: slack.signing_secret is not set; requests are not verified", err=True)
    if not remote:
        return
    setup_logging(debug=False)
    problems = anyio.run(_check_remote, settings)
    for problem in problems:
        typer.echo(f"error: {problem}", err=True)
    if problems:
        raise typer.Exit(code=1)


def app_main(
    version: bool = typer.Option(
        False,
        "--version",
        help="Show the version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """Relay messages between Slack and Lark."""


def create_app() -> typer.Typer:
    app = typer.Typer(add_completion=False, no_args_is_help=True)
    app.callback()(app_main)
    app.command(name="serve")(serve)
    app.command(name="link")(link)
    app.command(name="unlink")(unlink)
    app.command(name="check")(check)
    return app


def main() -> None:
    app = create_app()
    app()


if __name__ == "__main__":
    main()
