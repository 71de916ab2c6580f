"""Command-line interface for Site Kit Auth."""

from __future__ import annotations

import asyncio
import sys

import typer
from cryptography.fernet import Fernet

from sitekit_auth import __version__
from sitekit_auth.config import Config, ConfigError, load_config
from sitekit_auth.logging_config import get_logger, setup_logging

app = typer.Typer(
    name="sitekit-auth",
    help="Site Kit Auth - connect a site to Google services",
    add_completion=False,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"sitekit-auth version {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    """Site Kit Auth CLI."""


@app.command()
def serve(
    config_path: str | None = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to configuration file (JSON or YAML)",
    ),
    log_level: str | None = typer.Option(
        None,
        "--log-level",
        "-l",
        help="Log level override (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    ),
    host: str | None = typer.Option(None, "--host", "-h", help="Host to bind to"),
    port: int | None = typer.Option(None, "--port", "-p", help="Port to bind to"),
    direct: bool = typer.Option(
        False,
        "--direct",
        help="Use configured OAuth client credentials instead of the proxy",
    ),
) -> None:
    """Run the HTTP server."""
    cli_args: dict[str, str | int | bool | None] = {}
    if log_level:
        cli_args["log_level"] = log_level
    if host:
        cli_args["host"] = host
    if port:
        cli_args["port"] = port
    if direct:
        cli_args["use_proxy"] = False

    try:
        config = load_config(path=config_path, cli_args=cli_args)

        setup_logging(config)
        logger = get_logger(__name__)

        logger.info(
            "Starting Site Kit Auth (site: %s, env: %s, proxy: %s)",
            config.site_url,
            config.environment.value,
            config.use_proxy,
        )

        asyncio.run(_run_server(config))

    except ConfigError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(code=1) from None
    except KeyboardInterrupt:
        get_logger(__name__).info("Shutting down (keyboard interrupt)")
        raise typer.Exit(code=0) from None


async def _run_server(config: Config) -> None:
    from sitekit_auth.transport import create_http_app, run_http

    http_app = create_http_app(config)
    await run_http(http_app, config.host, config.port)


@app.command()
def version() -> None:
    """Print version information."""
    typer.echo(f"sitekit-auth version {__version__}")
    typer.echo(f"Python {sys.version}")


@app.command("generate-key")
def generate_key() -> None:
    """Print a new Fernet key for the encrypted storage."""
    typer.echo(Fernet.generate_key().decode())


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
