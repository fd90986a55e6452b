"""CLI handler for the local console chat."""

from __future__ import annotations

import asyncio
import getpass
import sys

import click

from agentrelay.config import load_config
from agentrelay.context import AppContext
from agentrelay.errors import AlreadyProcessing, ConfigurationError, SessionClosedError, TurnError
from agentrelay.models.agent import RunMode
from agentrelay.models.session import SessionKey
from agentrelay.services.emitter import EmitterSnapshot

CONSOLE_ORIGIN = "console"


def _run(coro):
    return asyncio.run(coro)


class _StatusPrinter:
    """Writes throttled progress to stderr, one line per change."""

    def __init__(self) -> None:
        self._last = ""

    def __call__(self, snapshot: EmitterSnapshot) -> None:
        if snapshot.final:
            return
        line = snapshot.status or ("Writing..." if snapshot.text else "Processing...")
        if line != self._last:
            self._last = line
            click.echo(f"... {line}", err=True)


@click.command("chat")
@click.option("--workdir", "-w", default="", help="Working directory for the agent")
@click.option("--resume", "-r", default="", help="Identity token of a session to resume")
@click.option(
    "--mode",
    type=click.Choice([m.value for m in RunMode]),
    default=None,
    help="Override the configured run mode",
)
@click.option("--no-store", is_flag=True, help="Run without MongoDB persistence")
def chat_command(workdir: str, resume: str, mode: str | None, no_store: bool):
    """Chat with the agent from this terminal. End with Ctrl-D."""
    try:
        config = load_config()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e
    if mode:
        config.claude.mode = RunMode(mode)
    key = SessionKey(CONSOLE_ORIGIN, getpass.getuser())

    async def _chat():
        ctx = AppContext(config=config)
        await ctx.initialize(use_store=not no_store)
        relay = ctx.relay_service
        relay.registry.start_sweeper()
        try:
            if workdir or resume:
                session = await relay.start_session(key, workdir=workdir or None, resume=resume or None)
                click.echo(f"Session started in {session.workdir}", err=True)

            loop = asyncio.get_running_loop()
            while True:
                click.echo("> ", nl=False, err=True)
                line = await loop.run_in_executor(None, sys.stdin.readline)
                if not line:
                    break
                text = line.strip()
                if not text:
                    continue
                try:
                    result = await relay.send(key, text, on_progress=_StatusPrinter())
                except AlreadyProcessing as e:
                    click.echo(str(e), err=True)
                    continue
                except (TurnError, SessionClosedError) as e:
                    click.echo(f"Error: {e}", err=True)
                    partial = getattr(e, "partial_output", "")
                    if partial:
                        click.echo(partial)
                    continue
                click.echo(result.output or "(no output)")
        finally:
            await ctx.close()

    _run(_chat())
