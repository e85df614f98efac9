"""
pluginhost CLI

Commands:
    - pluginhost install <id> <source>
    - pluginhost update <id> <source>
    - pluginhost uninstall <id> [--purge]
    - pluginhost list [--state S] [--type T]
    - pluginhost info <id>
    - pluginhost recover
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import NoReturn, Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from pluginhost import __version__
from pluginhost.config import HostConfig, load_config
from pluginhost.exceptions import PluginHostError
from pluginhost.host import PluginHost
from pluginhost.lifecycle.manifest import PluginType
from pluginhost.lifecycle.models import PluginRecord
from pluginhost.lifecycle.state import PluginState

console = Console()
logger = logging.getLogger(__name__)

_STATE_STYLES = {
    PluginState.INSTALLED: "green",
    PluginState.ABSENT: "dim",
    PluginState.FAILED: "bold red",
    PluginState.INSTALLING: "yellow",
    PluginState.UPDATING: "yellow",
    PluginState.UNINSTALLING: "yellow",
}


def _format_datetime(dt: Optional[datetime]) -> str:
    if dt is None:
        return "N/A"
    return dt.strftime("%Y-%m-%d %H:%M:%S")


def _styled_state(state: PluginState) -> str:
    style = _STATE_STYLES.get(state, "white")
    return f"[{style}]{state.value}[/{style}]"


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _open_host(ctx: click.Context) -> PluginHost:
    config: HostConfig = ctx.obj["config"]
    host = PluginHost.from_config(config)
    ctx.call_on_close(host.close)
    return host


def _fail(exc: PluginHostError) -> NoReturn:
    console.print(f"[red]Error ({exc.code}):[/red] {exc}")
    raise SystemExit(1)


def _report(action: str, record: PluginRecord) -> None:
    if record.state == PluginState.FAILED:
        console.print(f"[red]✗[/red] {action} of {record.id} failed: {record.last_error}")
        raise SystemExit(1)
    version = f"@{record.installed_version}" if record.installed_version else ""
    console.print(
        f"[green]✓[/green] {record.id}{version} is {_styled_state(record.state)}"
    )


@click.group()
@click.version_option(__version__, prog_name="pluginhost")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="YAML configuration file (defaults to $PLUGIN_HOST_CONFIG)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[str]) -> None:
    """Install, update and uninstall plugins."""
    try:
        config = load_config(config_path)
    except PluginHostError as exc:
        _fail(exc)
    _configure_logging(config.log_level)
    ctx.ensure_object(dict)
    ctx.obj["config"] = config


@cli.command("install")
@click.argument("plugin_id")
@click.argument("source")
@click.pass_context
def install_plugin(ctx: click.Context, plugin_id: str, source: str) -> None:
    """Install PLUGIN_ID from SOURCE."""
    try:
        host = _open_host(ctx)
        host.start()
        record = host.install(plugin_id, source)
    except PluginHostError as exc:
        _fail(exc)
    _report("Install", record)


@cli.command("update")
@click.argument("plugin_id")
@click.argument("source")
@click.pass_context
def update_plugin(ctx: click.Context, plugin_id: str, source: str) -> None:
    """Update PLUGIN_ID to the package at SOURCE."""
    try:
        host = _open_host(ctx)
        host.start()
        record = host.update(plugin_id, source)
    except PluginHostError as exc:
        _fail(exc)
    _report("Update", record)


@cli.command("uninstall")
@click.argument("plugin_id")
@click.option("--purge", is_flag=True, help="Also remove the registry record")
@click.pass_context
def uninstall_plugin(ctx: click.Context, plugin_id: str, purge: bool) -> None:
    """Uninstall PLUGIN_ID."""
    try:
        host = _open_host(ctx)
        host.start()
        record = host.uninstall(plugin_id, purge=purge)
    except PluginHostError as exc:
        _fail(exc)
    if purge:
        console.print(f"[green]✓[/green] Uninstalled and purged {plugin_id}")
        return
    _report("Uninstall", record)


@cli.command("list")
@click.option(
    "--state",
    type=click.Choice([s.value for s in PluginState]),
    default=None,
    help="Filter by lifecycle state",
)
@click.option(
    "--type",
    "plugin_type",
    type=click.Choice([t.value for t in PluginType]),
    default=None,
    help="Filter by plugin type",
)
@click.pass_context
def list_plugins(ctx: click.Context, state: Optional[str], plugin_type: Optional[str]) -> None:
    """List known plugins."""
    try:
        host = _open_host(ctx)
    except PluginHostError as exc:
        _fail(exc)
    records = list(
        host.list_records(state=PluginState(state) if state else None, plugin_type=plugin_type)
    )
    if not records:
        console.print("[yellow]No plugins found.[/yellow]")
        return
    table = Table(title="Plugins")
    table.add_column("ID", style="cyan")
    table.add_column("State")
    table.add_column("Version")
    table.add_column("Type")
    table.add_column("Updated")
    for record in records:
        table.add_row(
            record.id,
            _styled_state(record.state),
            record.installed_version or "-",
            record.plugin_type or "-",
            _format_datetime(record.updated_at),
        )
    console.print(table)


@cli.command("info")
@click.argument("plugin_id")
@click.pass_context
def plugin_info(ctx: click.Context, plugin_id: str) -> None:
    """Show the registry record of PLUGIN_ID."""
    try:
        host = _open_host(ctx)
    except PluginHostError as exc:
        _fail(exc)
    record = host.get(plugin_id)
    table = Table(title=f"Plugin {plugin_id}", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("State", _styled_state(record.state))
    table.add_row("Version", record.installed_version or "-")
    table.add_row("Type", record.plugin_type or "-")
    table.add_row("Author", record.author or "-")
    table.add_row("Description", record.description or "-")
    table.add_row("Source", record.source or "-")
    table.add_row("Checksum", record.checksum or "-")
    table.add_row("Installed", _format_datetime(record.installed_at))
    table.add_row("Updated", _format_datetime(record.updated_at))
    if record.last_error:
        table.add_row("Last error", f"[red]{record.last_error}[/red]")
    console.print(table)


@cli.command("recover")
@click.pass_context
def recover(ctx: click.Context) -> None:
    """Reconcile operations interrupted by a crash."""
    try:
        host = _open_host(ctx)
        recovered = host.start()
    except PluginHostError as exc:
        _fail(exc)
    if not recovered:
        console.print("[green]✓[/green] Nothing to recover")
        return
    for record in recovered:
        console.print(f"Recovered {record.id}: {_styled_state(record.state)}")


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
