"""CLI for calsync: authorize a provider connection and inspect its events."""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar

import click

from calsync import __version__
from calsync.adapter import ProviderSyncAdapter
from calsync.config import CalsyncConfig, ProviderSettings, load_config
from calsync.errors import CalendarSyncError, build_error_payload
from calsync.logging import configure_logging, set_provider_context
from calsync.tokens import TokenManager
from calsync.transport import HttpxTransport

T = TypeVar("T")


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Path to a calsync TOML config file",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """calsync: calendar event synchronization against OAuth2 providers."""
    try:
        config = load_config(config_path) if config_path is not None else CalsyncConfig()
    except CalendarSyncError as exc:
        click.echo(f"Config error: {exc}", err=True)
        sys.exit(1)
    configure_logging(level=config.logging.level, fmt=config.logging.format)
    set_provider_context(config.settings.provider)
    ctx.obj = config


@cli.command("auth-url")
@click.option("--redirect-uri", default=None, help="Override the configured redirect URI")
@click.option("--state", default=None, help="Opaque state echoed back on the callback")
@click.pass_obj
def auth_url(config: CalsyncConfig, redirect_uri: str | None, state: str | None) -> None:
    """Print the URL the user must visit to authorize calsync."""

    async def _auth_url(manager: TokenManager, _: ProviderSyncAdapter) -> None:
        credentials_only = config.connection.model_copy(
            update={"access_token": None, "refresh_token": None, "expires_at": None}
        )
        result = await manager.connect(
            credentials_only, verify=False, redirect_uri=redirect_uri, state=state
        )
        if result.authorization_url is None:
            click.echo(result.message or "Client credentials are required", err=True)
            sys.exit(1)
        click.echo(result.authorization_url)

    _run(config, _auth_url)


@cli.command("exchange-code")
@click.argument("code")
@click.option("--redirect-uri", default=None, help="Redirect URI used for the authorization")
@click.pass_obj
def exchange_code(config: CalsyncConfig, code: str, redirect_uri: str | None) -> None:
    """Exchange an authorization CODE for tokens and print them for storage."""

    async def _exchange(manager: TokenManager, _: ProviderSyncAdapter) -> None:
        await manager.connect(config.connection, verify=False)
        connection = await manager.exchange_code(code, redirect_uri=redirect_uri)
        click.echo(
            json.dumps(
                {
                    "access_token": connection.access_token,
                    "refresh_token": connection.refresh_token,
                    "expires_at": connection.expires_at.isoformat()
                    if connection.expires_at
                    else None,
                },
                indent=2,
            )
        )

    _run(config, _exchange)


@cli.command()
@click.pass_obj
def status(config: CalsyncConfig) -> None:
    """Connect with the configured credentials and report reachability."""

    async def _status(manager: TokenManager, _: ProviderSyncAdapter) -> None:
        result = await manager.connect(config.connection, verify=True)
        click.echo(f"{'Provider':<12} {config.settings.provider}")
        click.echo(f"{'Status':<12} {result.status.value}")
        click.echo(f"{'State':<12} {manager.state.value}")
        if result.reachable is not None:
            click.echo(f"{'Reachable':<12} {'yes' if result.reachable else 'no'}")
        if result.authorization_url:
            click.echo(f"{'Auth URL':<12} {result.authorization_url}")
        elif result.message and result.requires_setup:
            click.echo(result.message)

    _run(config, _status)


@cli.command("list-events")
@click.option("--calendar", "calendar_id", default=None, help="Calendar ID (default: configured)")
@click.option(
    "--from",
    "window_start",
    type=click.DateTime(formats=["%Y-%m-%d", "%Y-%m-%dT%H:%M:%S"]),
    default=None,
    help="Only list events ending after this time (UTC)",
)
@click.option("--limit", type=click.IntRange(min=1), default=50, show_default=True)
@click.option("--json", "as_json", is_flag=True, help="Print events as JSON lines")
@click.pass_obj
def list_events(
    config: CalsyncConfig,
    calendar_id: str | None,
    window_start: datetime | None,
    limit: int,
    as_json: bool,
) -> None:
    """List upcoming events from the provider."""

    async def _list(manager: TokenManager, adapter: ProviderSyncAdapter) -> None:
        await _require_connected(manager, config)
        events = await adapter.list_events(
            calendar_id=calendar_id,
            window_start=window_start,
            limit=limit,
        )
        if not events:
            click.echo("No events found")
            return
        for event in events:
            if as_json:
                click.echo(event.model_dump_json())
            else:
                click.echo(f"{event.formatted_range():<40} {event.title}")

    _run(config, _list)


@cli.command()
@click.pass_obj
def revoke(config: CalsyncConfig) -> None:
    """Revoke the configured tokens with the provider."""

    async def _revoke(manager: TokenManager, _: ProviderSyncAdapter) -> None:
        await manager.connect(config.connection, verify=False)
        await manager.revoke()
        click.echo("Tokens revoked. Remove them from your config.")

    _run(config, _revoke)


def _make_transport(settings: ProviderSettings) -> HttpxTransport:
    return HttpxTransport(timeout=settings.timeout_seconds)


async def _require_connected(manager: TokenManager, config: CalsyncConfig) -> None:
    result = await manager.connect(config.connection, verify=False)
    if result.requires_setup:
        click.echo(result.message or "Client credentials are required", err=True)
        sys.exit(1)
    if result.requires_auth:
        click.echo("Not authorized. Visit this URL and run exchange-code:", err=True)
        click.echo(result.authorization_url, err=True)
        sys.exit(1)


def _run(
    config: CalsyncConfig,
    command: Callable[[TokenManager, ProviderSyncAdapter], Awaitable[T]],
) -> T:
    async def _main() -> Any:
        async with _make_transport(config.settings) as transport:
            manager = TokenManager(transport, settings=config.settings)
            adapter = ProviderSyncAdapter(manager, transport)
            return await command(manager, adapter)

    try:
        return asyncio.run(_main())
    except CalendarSyncError as exc:
        payload = build_error_payload(
            exc,
            provider=config.settings.provider,
            calendar_id=config.settings.calendar_id,
        )
        click.echo(json.dumps(payload), err=True)
        sys.exit(1)
