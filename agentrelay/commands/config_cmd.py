"""CLI handlers for config commands."""

from __future__ import annotations

import click

from agentrelay.config import DEFAULT_CONFIG_PATH, init_config, load_config
from agentrelay.errors import ConfigurationError


@click.group("config")
def config_group():
    """Manage configuration."""
    pass


@config_group.command("init")
@click.option("--force", is_flag=True, help="Overwrite an existing file")
def config_init(force: bool):
    """Create default configuration file."""
    if DEFAULT_CONFIG_PATH.exists() and not force:
        click.echo(f"Configuration already exists at: {DEFAULT_CONFIG_PATH} (use --force)", err=True)
        return
    path = init_config()
    click.echo(f"Configuration created at: {path}")


@config_group.command("show")
def config_show():
    """Show current configuration."""
    try:
        config = load_config()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e
    claude = config.claude
    sup = config.supervisor
    click.echo(f"Config file: {config.config_path}")
    click.echo(f"  Executable: {claude.executable}")
    click.echo(f"  Mode: {claude.mode.value}")
    click.echo(f"  Model: {claude.model or '(default)'}")
    click.echo(f"  Working directory: {claude.resolved_workdir}")
    if claude.permission_mode:
        click.echo(f"  Permission mode: {claude.permission_mode}")
    if claude.extra_args:
        click.echo(f"  Extra args: {' '.join(claude.extra_args)}")
    click.echo(f"  MongoDB: {config.mongodb.database}")

    click.echo("\n  Supervisor:")
    click.echo(f"    turn timeout: {sup.turn_timeout:g}s, startup timeout: {sup.startup_timeout:g}s")
    click.echo(f"    close grace: {sup.close_grace:g}s, emit interval: {sup.emit_interval:g}s")
    click.echo(f"    idle timeout: {sup.idle_timeout:g}s, sweep every {sup.sweep_interval:g}s")
