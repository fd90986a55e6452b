"""Click CLI definitions - main entry point."""

from __future__ import annotations

import logging
import sys

import click

from agentrelay.commands.chat_cmd import chat_command
from agentrelay.commands.config_cmd import config_group
from agentrelay.commands.session_cmd import sessions_command


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx, debug: bool) -> None:
    """agentrelay - Relay chat turns to long-lived agent sessions."""
    level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


cli.add_command(chat_command, "chat")
cli.add_command(sessions_command, "sessions")
cli.add_command(config_group, "config")


if __name__ == "__main__":
    cli()
