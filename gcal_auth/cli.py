"""CLI entry point for gcal-auth."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import NoReturn

import click

from . import __version__
from .config import Settings, load_settings
from .oauth import (
    AuthManager,
    CallbackError,
    CallbackTimeoutError,
    LoginError,
    LoginNotConfiguredError,
    TokenExchangeError,
    TokenFailure,
    TokenStoreError,
)
from .output import OutputHandler

# Logger for CLI
logger = logging.getLogger("gcal-auth")

FAILURE_HELP = {
    TokenFailure.NOT_CONFIGURED: (
        "Custom client mode needs both a client id and a client secret. "
        "Set GCAL_CLIENT_ID and GCAL_CLIENT_SECRET or disable useCustomClient."
    ),
    TokenFailure.NOT_LOGGED_IN: "Run 'gcal-auth login' to connect your Google account.",
    TokenFailure.EXPIRED: "Run 'gcal-auth token' to refresh the access token.",
    TokenFailure.REFRESH_FAILED: (
        "The token server could not be reached or rejected the refresh. "
        "Try again later, or run 'gcal-auth login' if the problem persists."
    ),
}


@click.group()
@click.option("--json", "json_mode", is_flag=True, help="Output in JSON format")
@click.option("--settings", "settings_path", type=click.Path(exists=True), help="Path to settings JSON file")
@click.option("--env-file", "env_path", type=click.Path(exists=True), help="Path to .env file")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.version_option(version=__version__)
@click.pass_context
def main(ctx: click.Context, json_mode: bool, settings_path: str | None, env_path: str | None, verbose: bool) -> None:
    """gcal-auth - Connect a desktop app to Google Calendar with OAuth."""
    ctx.ensure_object(dict)
    ctx.obj["json_mode"] = json_mode
    ctx.obj["settings_path"] = Path(settings_path) if settings_path else None
    ctx.obj["env_path"] = Path(env_path) if env_path else None
    ctx.obj["output"] = OutputHandler(json_mode)

    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        )
    else:
        logging.basicConfig(level=logging.WARNING)


def get_settings(ctx: click.Context) -> Settings | NoReturn:
    """Get settings from context, handling errors."""
    output: OutputHandler = ctx.obj["output"]
    try:
        return load_settings(ctx.obj["settings_path"], ctx.obj["env_path"])
    except json.JSONDecodeError as e:
        output.error(
            e,
            error_type="SettingsParseError",
            help_text="The settings file contains invalid JSON. Check for syntax errors.",
        )
        raise SystemExit(1)  # Never reached due to sys.exit in output.error
    except ValueError as e:
        output.error(e, error_type="SettingsParseError")
        raise SystemExit(1)


def get_manager(ctx: click.Context, settings: Settings, notices: bool = True) -> AuthManager:
    """Build the auth manager with notices routed to the terminal.

    Commands that report failures through ``output.error`` pass
    ``notices=False`` so the same message is not printed twice.
    """
    output: OutputHandler = ctx.obj["output"]
    return AuthManager(settings=settings, on_notice=output.notice if notices else None)


@main.command()
@click.option("--timeout", "-t", type=int, default=None, help="Seconds to wait for the browser callback")
@click.pass_context
def login(ctx: click.Context, timeout: int | None) -> None:
    """Log in to Google in the browser and store the tokens."""
    output: OutputHandler = ctx.obj["output"]
    settings = get_settings(ctx)
    if timeout is not None:
        settings.callback_timeout = timeout

    manager = get_manager(ctx, settings, notices=False)

    try:
        record = asyncio.run(manager.login(on_status=output.status))
    except LoginNotConfiguredError as e:
        output.error(e, help_text=FAILURE_HELP[TokenFailure.NOT_CONFIGURED])
        return
    except CallbackTimeoutError as e:
        output.error(
            e,
            help_text="The browser login was not completed in time. Run 'gcal-auth login' again.",
        )
        return
    except CallbackError as e:
        output.error(
            e,
            help_text="Another login may still be running, or another program uses the callback port.",
        )
        return
    except (LoginError, TokenExchangeError, TokenStoreError) as e:
        output.error(e)
        return

    output.success(
        {
            "logged_in": True,
            "client_mode": "custom" if settings.use_custom_client else "broker",
            "expires_at_ms": record.expires_at_ms,
        },
        human_message="Authentication successful! Google Calendar is connected.",
    )


@main.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show the stored Google credentials' status."""
    output: OutputHandler = ctx.obj["output"]
    settings = get_settings(ctx)
    auth_status = get_manager(ctx, settings).get_auth_status()

    rows = [
        ("Logged in", "yes" if auth_status.logged_in else "no"),
        ("Access token", "valid" if auth_status.access_token_valid else "expired or missing"),
        ("Expires in", auth_status.expires_in_human),
        ("Client mode", auth_status.client_mode),
        ("Settings complete", "yes" if auth_status.settings_complete else "no"),
    ]
    if auth_status.error:
        rows.append(("Error", auth_status.error))

    output.fields("Google Calendar authentication:", rows, auth_status.to_dict())


@main.command()
@click.pass_context
def token(ctx: click.Context) -> None:
    """Print a valid access token, refreshing it if needed."""
    output: OutputHandler = ctx.obj["output"]
    settings = get_settings(ctx)
    manager = get_manager(ctx, settings)

    result = asyncio.run(manager.ensure_access_token())
    if not result.ok:
        reason = result.reason or TokenFailure.NOT_LOGGED_IN
        output.error(
            RuntimeError(f"No access token available ({reason.value})"),
            error_type="TokenUnavailable",
            help_text=FAILURE_HELP[reason],
        )
        return

    if ctx.obj["json_mode"]:
        output.success({"access_token": result.token})
    else:
        click.echo(result.token)


@main.command()
@click.option("--no-revoke", is_flag=True, help="Only delete local tokens, do not revoke them at Google")
@click.pass_context
def logout(ctx: click.Context, no_revoke: bool) -> None:
    """Revoke and delete the stored Google credentials."""
    output: OutputHandler = ctx.obj["output"]
    settings = get_settings(ctx)
    manager = get_manager(ctx, settings)

    try:
        deleted = asyncio.run(manager.logout(revoke=not no_revoke))
    except TokenStoreError as e:
        output.error(e)
        return

    output.success(
        {"logged_out": deleted},
        human_message="Logged out from Google." if deleted else "No stored credentials.",
    )


if __name__ == "__main__":
    main()
