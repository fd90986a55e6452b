"""CLI handlers for stored session commands."""

from __future__ import annotations

import asyncio
import getpass

import click

from agentrelay.context import AppContext


def _run(coro):
    return asyncio.run(coro)


@click.command("sessions")
@click.option("--actor", "-a", default="", help="Actor id (defaults to the login name)")
@click.option("--limit", "-n", default=20, help="Maximum number of sessions")
def sessions_command(actor: str, limit: int):
    """List stored sessions, newest first."""
    actor = actor or getpass.getuser()

    async def _list():
        ctx = AppContext()
        await ctx.initialize()
        try:
            records = await ctx.relay_service.list_sessions(actor, limit=limit)
            if not records:
                click.echo("No sessions found.")
                return
            for r in records:
                state = "active" if r.is_active else "inactive"
                updated = r.updated_at.strftime("%Y-%m-%d %H:%M")
                click.echo(f"  {r.short_identity:<10} {state:<9} {updated}  {r.origin_id}  {r.workdir or ''}")
        finally:
            await ctx.close()

    _run(_list())
