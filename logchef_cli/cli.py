"""CLI entry point for the LogChef CLI."""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import NoReturn

import click

from . import __version__
from .api import ApiError
from .config import Config, ConfigError, load_config
from .oauth.errors import (
    AuthNotConfiguredError,
    BindError,
    CallbackTimeoutError,
    CsrfMismatchError,
    OAuthFlowError,
)
from .oauth.manager import AuthManager
from .oauth.store import TokenDecryptionError, TokenStoreError
from .output import OutputHandler

# Logger for CLI
logger = logging.getLogger("logchef")


def _help_for(error: Exception) -> str | None:
    """Suggest a next step for a failed auth command."""
    if isinstance(error, CallbackTimeoutError):
        return "The browser did not complete the login in time. Run 'logchef auth' again."
    if isinstance(error, CsrfMismatchError):
        return (
            "The login callback did not belong to this session and was rejected. "
            "Close stale login tabs and run 'logchef auth' again."
        )
    if isinstance(error, BindError):
        return "No local port is available for the login callback."
    if isinstance(error, AuthNotConfiguredError):
        return "The server admin must configure an OIDC client for the CLI."
    if isinstance(error, TokenDecryptionError):
        return "Stored tokens are unreadable. Run 'logchef auth' to log in again."
    if isinstance(error, ApiError):
        return "Check the server URL and that the server is reachable."
    return None


@click.group()
@click.option("--server", "server_url", envvar="LOGCHEF_SERVER", help="LogChef server URL")
@click.option("--context", "context_name", envvar="LOGCHEF_CONTEXT", help="Config context to use")
@click.option("--json", "json_mode", is_flag=True, help="Output in JSON format")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="Path to config file")
@click.option("--env-file", "env_path", type=click.Path(exists=True), help="Path to .env file")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.version_option(version=__version__)
@click.pass_context
def main(
    ctx: click.Context,
    server_url: str | None,
    context_name: str | None,
    json_mode: bool,
    config_path: str | None,
    env_path: str | None,
    verbose: bool,
) -> None:
    """LogChef CLI - query LogChef from the terminal."""
    ctx.ensure_object(dict)
    ctx.obj["server_url"] = server_url
    ctx.obj["context_name"] = context_name
    ctx.obj["json_mode"] = json_mode
    ctx.obj["config_path"] = Path(config_path) if config_path else None
    ctx.obj["env_path"] = Path(env_path) if env_path else None
    ctx.obj["output"] = OutputHandler(json_mode)

    # Configure logging based on verbosity
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        )
    else:
        logging.basicConfig(level=logging.WARNING)


def get_config(ctx: click.Context) -> Config | NoReturn:
    """Get config from context, handling errors."""
    output: OutputHandler = ctx.obj["output"]
    try:
        return load_config(ctx.obj["config_path"], ctx.obj["env_path"])
    except ConfigError as e:
        output.error(
            e,
            error_type="ConfigError",
            help_text="Fix or remove the config file and try again.",
        )
        raise SystemExit(1)  # Never reached due to sys.exit in output.error


def get_server_url(ctx: click.Context, config: Config) -> str:
    """Resolve the server to log into.

    Priority: --server (or LOGCHEF_SERVER, also from .env), the server of
    --context, then an interactive prompt defaulting to the current context.
    """
    server_url = ctx.obj["server_url"] or os.environ.get("LOGCHEF_SERVER")
    if server_url:
        return server_url

    context_name = ctx.obj["context_name"]
    if context_name:
        context = config.get_context(context_name)
        if context is None:
            raise ConfigError(f"Context '{context_name}' not found")
        return context.server_url

    current = config.get_current_context()
    server_url = click.prompt(
        "LogChef server URL",
        default=current.server_url if current else None,
        err=True,
    ).strip()
    if not server_url:
        raise click.UsageError("Server URL is required")
    return server_url


@main.command()
@click.option("--logout", "-l", is_flag=True, help="Remove the stored token")
@click.option("--status", is_flag=True, help="Show authentication status")
@click.pass_context
def auth(ctx: click.Context, logout: bool, status: bool) -> None:
    """Log in to a LogChef server through the browser.

    Opens the identity provider's login page and waits up to five minutes
    for the browser to come back to a temporary local address.
    """
    if logout and status:
        raise click.UsageError("--logout and --status cannot be used together")

    output: OutputHandler = ctx.obj["output"]
    config = get_config(ctx)

    try:
        manager = AuthManager(config)
        if logout:
            _logout(ctx, manager)
        elif status:
            _status(ctx, manager)
        else:
            _login(ctx, manager)
    except (OAuthFlowError, ApiError, ConfigError, TokenStoreError) as e:
        output.error(e, help_text=_help_for(e))


def _login(ctx: click.Context, manager: AuthManager) -> None:
    output: OutputHandler = ctx.obj["output"]
    server_url = get_server_url(ctx, manager.config)

    result = asyncio.run(
        manager.login(
            server_url,
            context_name=ctx.obj["context_name"],
            on_status=output.info,
        )
    )

    if result.user_email:
        message = f"Authenticated as {result.user_email} (context: '{result.context_name}')"
    else:
        message = f"Authenticated! (context: '{result.context_name}')"
    output.success(result.to_dict(), human_message=message)


def _logout(ctx: click.Context, manager: AuthManager) -> None:
    output: OutputHandler = ctx.obj["output"]
    context_name = manager.resolve_context_name(ctx.obj["context_name"], ctx.obj["server_url"])
    if context_name is None:
        raise ConfigError("No current context set. Use --context or --server.")

    removed = manager.logout(context_name)
    if removed:
        message = f"Logged out from context '{context_name}'."
    else:
        message = f"Context '{context_name}' was not logged in."
    output.success({"context": context_name, "logged_out": removed}, human_message=message)


def _status(ctx: click.Context, manager: AuthManager) -> None:
    output: OutputHandler = ctx.obj["output"]
    context_name = manager.resolve_context_name(ctx.obj["context_name"], ctx.obj["server_url"])
    if context_name is None or manager.config.get_context(context_name) is None:
        if ctx.obj["json_mode"]:
            output.success({"context": context_name, "authenticated": False})
        else:
            click.echo("No contexts configured. Run 'logchef --server <url> auth' to set up.")
        return

    auth_status = asyncio.run(manager.status(context_name))

    if not auth_status.authenticated:
        state = "Not authenticated"
    elif auth_status.error:
        state = auth_status.error
    else:
        state = "Authenticated"

    expires = None
    if auth_status.expires_in_human:
        expires = f"{auth_status.expires_at} ({auth_status.expires_in_human})"

    output.fields(
        auth_status.to_dict(),
        [
            ("Context", auth_status.context_name),
            ("Server", auth_status.server_url),
            ("Status", state),
            ("User", auth_status.user_email),
            ("Name", auth_status.full_name),
            ("Role", auth_status.role),
            ("Expires", expires),
        ],
    )


if __name__ == "__main__":
    main()
