# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Command-line interface for smtp-dispatch.

Usage:
    smtp-dispatch hostname
    smtp-dispatch properties smtp.ini [--json]
    smtp-dispatch send smtp.ini --from me@example.com --to you@example.com \\
        --subject "Hello" --body "Hi there"

Example:
    $ smtp-dispatch --log-level DEBUG send smtp.ini \\
        --from "Reports <reports@example.com>" \\
        --to alice@example.com --cc bob@example.com \\
        --subject "Nightly report" --body-file report.html --type text/html \\
        --user mailer --password secret
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .config_loader import load_connection_config, load_credentials
from .dispatch import Dispatcher
from .exceptions import DispatchError
from .hostname import resolve_local_hostname
from .models import Credentials, MimeContent, OutgoingMessage

console = Console()
err_console = Console(stderr=True)


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {escape(message)}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]✓[/green] {escape(message)}")


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


@click.group()
@click.version_option(package_name="smtp-dispatch")
@click.option(
    "--log-level",
    default="WARNING",
    show_default=True,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Logging level.",
)
def main(log_level: str) -> None:
    """Send email through an SMTP(S) server."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )


@main.command("hostname")
def hostname_command() -> None:
    """Print the hostname announced to SMTP servers."""
    try:
        hostname = run_async(resolve_local_hostname())
    except DispatchError as exc:
        print_error(str(exc))
        sys.exit(1)
    console.print(hostname)


@main.command("properties")
@click.argument("config_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def properties_command(config_file: Path, as_json: bool) -> None:
    """Show the session properties derived from CONFIG_FILE."""
    try:
        config = load_connection_config(config_file)
        properties = run_async(Dispatcher(config).properties())
    except DispatchError as exc:
        print_error(str(exc))
        sys.exit(1)

    if as_json:
        print_json(properties)
        return

    table = Table(title=f"{config.protocol}://{config.host}:{config.port}")
    table.add_column("Property", style="cyan")
    table.add_column("Value")
    for key in sorted(properties):
        table.add_row(key, properties[key])
    console.print(table)


@main.command("send")
@click.argument("config_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--from", "sender", required=True, help="Sender address.")
@click.option("--to", "to", multiple=True, help="Recipient address (repeatable).")
@click.option("--cc", "cc", multiple=True, help="Cc address (repeatable).")
@click.option("--bcc", "bcc", multiple=True, help="Bcc address (repeatable).")
@click.option("--subject", "-s", required=True, help="Subject line.")
@click.option("--body", default=None, help="Message body.")
@click.option(
    "--body-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Read the message body from a file.",
)
@click.option("--type", "mime_type", default="text/plain", show_default=True, help="MIME type of the body.")
@click.option("--user", default=None, help="SMTP username (overrides [auth]).")
@click.option("--password", default=None, envvar="SMTP_DISPATCH_PASSWORD", help="SMTP password.")
def send_command(
    config_file: Path,
    sender: str,
    to: tuple[str, ...],
    cc: tuple[str, ...],
    bcc: tuple[str, ...],
    subject: str,
    body: str | None,
    body_file: Path | None,
    mime_type: str,
    user: str | None,
    password: str | None,
) -> None:
    """Send one message through the server configured in CONFIG_FILE."""
    if (body is None) == (body_file is None):
        print_error("Provide exactly one of --body or --body-file")
        sys.exit(1)
    if body_file is not None:
        body = body_file.read_text(encoding="utf-8")

    try:
        config = load_connection_config(config_file)
        credentials = load_credentials(config_file)
        if user:
            credentials = Credentials(username=user, password=password or "")
        elif password and credentials is not None:
            credentials = Credentials(username=credentials.username, password=password)
        message = OutgoingMessage(
            subject=subject,
            content=MimeContent(content=body, type=mime_type),
            sender=sender,
            to=list(to),
            cc=list(cc),
            bcc=list(bcc),
        )
        message_id = run_async(Dispatcher(config).send(message, credentials))
    except DispatchError as exc:
        print_error(str(exc))
        sys.exit(1)

    print_success(f"Sent {message_id}")


if __name__ == "__main__":
    main()
