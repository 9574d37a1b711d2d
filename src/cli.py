"""Click CLI for running and operating the Avito webhook gateway."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import click

from src.audit.logger import validate_audit_chain
from src.avito.token_manager import TokenManager
from src.config import GatewayConfig
from src.errors import ConfigurationError, TokenRefreshError
from src.webhook.signature import compute_signature


def _load_config() -> GatewayConfig:
    try:
        return GatewayConfig.from_env()
    except ConfigurationError as exc:
        raise click.ClickException(str(exc)) from exc


def _mask(token: str) -> str:
    if len(token) <= 8:
        return "*" * len(token)
    return f"{token[:4]}...{token[-4:]}"


@click.group()
@click.option("--log-level", default="INFO", help="Python logging level.")
def cli(log_level: str) -> None:
    """Avito webhook gateway CLI."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command()
@click.option("--host", default="0.0.0.0", help="Bind address.")
@click.option("--port", default=8000, type=int, help="Bind port.")
def serve(host: str, port: int) -> None:
    """Run the gateway with uvicorn."""
    import uvicorn

    _load_config()
    uvicorn.run("src.gateway.app:create_app_from_env", factory=True, host=host, port=port)


@cli.command()
@click.argument("body_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--secret", envvar="WEBHOOK_SECRET", default="", help="Shared webhook secret.")
def sign(body_file: Path, secret: str) -> None:
    """Print the signature header value for BODY_FILE."""
    if not secret:
        raise click.ClickException("A secret is required (--secret or WEBHOOK_SECRET)")
    click.echo(compute_signature(body_file.read_bytes(), secret))


@cli.command("refresh-token")
def refresh_token() -> None:
    """Exchange the configured credentials for a fresh access token."""
    config = _load_config()
    manager = TokenManager.from_config(config)
    try:
        token = asyncio.run(manager.force_refresh())
    except (TokenRefreshError, ConfigurationError) as exc:
        raise click.ClickException(str(exc)) from exc

    state = manager.snapshot()
    click.echo(f"access_token: {_mask(token)}")
    click.echo(f"expires_at: {state.expires_at.isoformat() if state.expires_at else 'unknown'}")
    if state.refresh_token != config.refresh_token:
        click.echo("refresh token was rotated; update AVITO_REFRESH_TOKEN", err=True)


@cli.command("verify-audit")
@click.argument("log_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def verify_audit(log_path: Path) -> None:
    """Validate the hash chain of an audit log."""
    result = validate_audit_chain(log_path)
    if result.valid:
        click.echo("audit chain valid")
        return
    click.echo(f"audit chain broken at line {result.broken_at_line}", err=True)
    sys.exit(1)


if __name__ == "__main__":
    cli()
