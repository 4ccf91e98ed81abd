"""
CLI entrypoint for the AlphaForge broker gateway.

Provides commands for serving the API, inspecting a user's session state and
sweeping expired broker sessions.
"""
import asyncio
from pathlib import Path
from typing import Optional

import typer

from alphaforge.config.config import load_config
from alphaforge.monitoring.logger import get_logger, setup_logging
from alphaforge.runtime.container import AppServices

app = typer.Typer(
    name="alphaforge",
    help="AlphaForge broker session & gateway",
    add_completion=False,
)

logger = get_logger(__name__)


def _load(config_path: Optional[Path]):
    config = load_config(str(config_path) if config_path else None)
    setup_logging(config.monitoring.log_level, config.monitoring.log_format, config.monitoring.log_file)
    return config


async def _with_services(config, action):
    services = AppServices.build(config)
    await services.startup()
    try:
        return await action(services)
    finally:
        await services.shutdown()


@app.command()
def serve(
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
    host: Optional[str] = typer.Option(None, "--host", help="Bind address (overrides config)"),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port (overrides config)"),
):
    """Run the HTTP API."""
    import uvicorn

    from alphaforge.api.app import create_app

    config = _load(config_path)
    services = AppServices.build(config)
    api = create_app(services)

    logger.info("Starting API server", host=host or config.api.host, port=port or config.api.port)
    uvicorn.run(api, host=host or config.api.host, port=port or config.api.port, log_config=None)


@app.command()
def state(
    user_id: str = typer.Argument(..., help="User id"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
):
    """Print the derived broker session state for a user."""
    config = _load(config_path)

    async def action(services: AppServices):
        return await services.fsm.get_state(user_id)

    current = asyncio.run(_with_services(config, action))
    typer.echo(current.value)


@app.command("login-url")
def login_url(
    api_key: str = typer.Argument(..., help="Broker API key"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
):
    """Print the broker login URL for an API key."""
    from alphaforge.gateway.broker_gateway import build_login_url

    config = _load(config_path)
    typer.echo(build_login_url(config.broker.login_url, api_key))


@app.command("expire-sessions")
def expire_sessions(
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
):
    """
    Clear the token of every broker session whose expiry has passed.

    Example:
        alphaforge expire-sessions --config alphaforge/config/config.yaml
    """
    config = _load(config_path)

    async def action(services: AppServices):
        return await services.fsm.expire_sessions()

    expired = asyncio.run(_with_services(config, action))
    typer.echo(f"Expired {len(expired)} session(s)")
    for user_id in expired:
        typer.echo(f"  {user_id}")


if __name__ == "__main__":
    app()
