# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Command-line interface for async-mail-guard.

Usage:
    async-mail-guard serve --config config.ini --port 8000
    async-mail-guard classify "550 Mailbox unavailable"
    async-mail-guard classify "Connection reset" --code ECONNRESET --locale en
    async-mail-guard presets --environment test
"""

from __future__ import annotations

import json
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from .config_loader import load_settings
from .factory import ENVIRONMENTS, PRESETS, adjust_for_environment
from .logger import configure_logging
from .translator import SUPPORTED_LOCALES, DeliveryErrorTranslator

console = Console()
err_console = Console(stderr=True)


class CommandLineError(Exception):
    """Failure described on the command line, optionally with an SMTP code."""

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.code = code


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


@click.group()
@click.version_option(package_name="async-mail-guard")
def main() -> None:
    """Rate limiting and retrying for outbound email."""


@main.command("serve")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None,
              help="Path to the INI configuration (default: $AMG_CONFIG or config.ini).")
@click.option("--host", "-h", default=None, help="Host to bind to (default: from config, 0.0.0.0).")
@click.option("--port", "-p", type=int, default=None, help="Port to listen on (default: from config, 8000).")
def serve(config_path: str | None, host: str | None, port: int | None) -> None:
    """Run the HTTP API with uvicorn."""
    import uvicorn

    from .api import build_app

    try:
        settings = load_settings(config_path)
    except ValueError as exc:
        print_error(str(exc))
        raise SystemExit(1) from exc
    configure_logging(settings.log_level)

    host = host or settings.host
    port = port or settings.port
    console.print("\n[bold cyan]Starting async-mail-guard[/bold cyan]")
    console.print(f"  Environment: {settings.environment}")
    console.print(f"  Listen:      {host}:{port}")
    console.print()
    uvicorn.run(build_app(settings), host=host, port=port, log_level=settings.log_level.lower())


@main.command("classify")
@click.argument("message")
@click.option("--code", default=None, help="SMTP code or errno symbol carried by the error.")
@click.option("--locale", type=click.Choice(SUPPORTED_LOCALES), default="pt", show_default=True,
              help="Locale of the end-user message.")
@click.option("--json", "as_json", is_flag=True, help="Print the report as JSON.")
def classify(message: str, code: str | None, locale: str, as_json: bool) -> None:
    """Show how a delivery error would be categorised and reported."""
    translator = DeliveryErrorTranslator(locale=locale)
    report = translator.handle_error(CommandLineError(message, code))
    if as_json:
        print_json(report.to_dict())
        return

    color = "red" if report.needs_attention else ("yellow" if report.should_retry else "magenta")
    console.print(f"Category:     [{color}]{report.category.value}[/{color}]")
    console.print(f"Retry:        {'yes' if report.should_retry else 'no'}")
    if report.retry_delay is not None:
        console.print(f"First delay:  {report.retry_delay:.0f} ms")
    console.print(f"Attention:    {'yes' if report.needs_attention else 'no'}")
    console.print(f"User message: {report.user_message}")
    console.print(f"Operator:     {report.operator_message}")


@main.command("presets")
@click.option("--environment", "-e", type=click.Choice(ENVIRONMENTS), default="production",
              show_default=True, help="Environment adjustment to apply.")
def presets(environment: str) -> None:
    """List the preset limiters as adjusted for an environment."""
    table = Table(title=f"Rate limit presets ({environment})")
    table.add_column("Name", style="cyan")
    table.add_column("Type")
    table.add_column("Strategy")
    table.add_column("Requests", justify="right")
    table.add_column("Window (ms)", justify="right")

    for name, preset in PRESETS.items():
        config = adjust_for_environment(preset, environment)
        table.add_row(
            name,
            config.type.value,
            config.strategy.value,
            str(config.max_requests),
            str(config.window_ms),
        )
    console.print(table)


if __name__ == "__main__":
    main()
