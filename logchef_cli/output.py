"""Output formatters for human-readable and JSON output."""

import json
import sys
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
                "help": help_text or "",
            },
        },
        indent=2,
    )


def output_error_json(
    error: Exception,
    error_type: str | None = None,
    help_text: str | None = None,
) -> None:
    """Output an error as JSON to stdout."""
    click.echo(format_error_json(error, error_type, help_text))
    sys.exit(1)


def output_error_human(error: Exception, help_text: str | None = None) -> None:
    """Output an error in human-readable format."""
    click.secho(f"Error: {error}", fg="red", err=True)
    if help_text:
        click.echo(f"\n{help_text}", err=True)
    sys.exit(1)


class OutputHandler:
    """Handles output formatting based on mode (JSON or human).

    In JSON mode stdout carries exactly one JSON document; progress
    messages go to stderr.
    """

    def __init__(self, json_mode: bool = False):
        self.json_mode = json_mode

    def info(self, message: str) -> None:
        """Output a progress message."""
        click.echo(message, err=self.json_mode)

    def success(self, data: Any, human_message: str | None = None) -> None:
        """Output success response."""
        if self.json_mode:
            click.echo(format_json(data))
        elif human_message:
            click.secho(human_message, fg="green")
        else:
            click.echo(json.dumps(data, indent=2, default=str))

    def fields(self, data: dict[str, Any], rows: list[tuple[str, str | None]]) -> None:
        """Output labelled values (human) or the raw data (JSON).

        Rows whose value is None are skipped in human mode.
        """
        if self.json_mode:
            click.echo(format_json(data))
            return

        shown = [(label, value) for label, value in rows if value is not None]
        width = max((len(label) for label, _ in shown), default=0) + 1
        for label, value in shown:
            click.echo(f"{(label + ':').ljust(width + 1)}{value}")

    def error(
        self,
        error: Exception,
        error_type: str | None = None,
        help_text: str | None = None,
    ) -> None:
        """Output error response and exit with status 1."""
        if self.json_mode:
            output_error_json(error, error_type, help_text)
        else:
            output_error_human(error, help_text)
