"""Output formatters for human-readable and JSON output."""

import json
import sys
import traceback
from typing import Any

import click


def format_json(data: Any, success: bool = True) -> str:
    """Format data as JSON output."""
    if success:
        output = {"success": True, "data": data}
    else:
        output = data  # Error dict already has success: false
    return json.dumps(output, indent=2, default=str)


def format_error_json(
    error: Exception,
    error_type: str | None = None,
    help_text: str | None = None,
) -> str:
    """Format an error as JSON with helpful information."""
    return json.dumps(
        {
            "success": False,
            "error": {
                "type": error_type or type(error).__name__,
                "message": str(error),
                "traceback": traceback.format_exc(),
                "help": help_text or "",
            },
        },
        indent=2,
    )


class OutputHandler:
    """Handles output formatting based on mode (JSON or human)."""

    def __init__(self, json_mode: bool = False):
        self.json_mode = json_mode

    def success(self, data: Any, human_message: str | None = None) -> None:
        """Output success response."""
        if self.json_mode:
            click.echo(format_json(data))
        elif human_message:
            click.secho(human_message, fg="green")
        else:
            click.echo(json.dumps(data, indent=2, default=str))

    def status(self, message: str) -> None:
        """Progress message for the human reader (stderr, never in JSON)."""
        if not self.json_mode:
            click.echo(message, err=True)

    def notice(self, message: str) -> None:
        """User-visible warning raised by the auth layer."""
        click.secho(f"Notice: {message}", fg="yellow", err=True)

    def fields(self, title: str, rows: list[tuple[str, Any]], data: Any) -> None:
        """Output aligned key/value rows (JSON mode outputs ``data``)."""
        if self.json_mode:
            click.echo(format_json(data))
            return

        click.secho(f"\n{title}\n", bold=True)
        width = max((len(label) for label, _ in rows), default=0)
        for label, value in rows:
            click.echo(f"  {label.ljust(width)}  {value if value is not None else '-'}")
        click.echo()

    def error(
        self,
        error: Exception,
        error_type: str | None = None,
        help_text: str | None = None,
    ) -> None:
        """Output error response and exit with status 1."""
        if self.json_mode:
            click.echo(format_error_json(error, error_type, help_text))
        else:
            click.secho(f"Error: {error}", fg="red", err=True)
            if help_text:
                click.echo(f"\n{help_text}", err=True)
        sys.exit(1)
