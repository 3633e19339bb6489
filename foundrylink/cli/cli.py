"""Main CLI entry point for foundrylink.

Each command wraps one host-facing operation of `StartupOrchestrator`.
"""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Optional, Tuple

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from foundrylink import __version__
from foundrylink.core.config import get_config
from foundrylink.core.errors import FoundryError
from foundrylink.core.notification import NotificationStateMachine, NotificationView
from foundrylink.core.orchestrator import OrchestrationState, StartupOrchestrator
from foundrylink.core.status import ServiceStatus
from foundrylink.utils.log import enable_file_logging, get_logger


console = Console()
logger = get_logger()


def build_orchestrator(settings_path: Optional[Path] = None) -> StartupOrchestrator:
    config = get_config()
    if settings_path is not None:
        config = config.model_copy(update={"settings_path": settings_path})
    return StartupOrchestrator.from_config(config)


def _orchestrator(ctx: click.Context) -> StartupOrchestrator:
    obj = ctx.ensure_object(dict)
    if obj.get("orchestrator") is None:
        obj["orchestrator"] = build_orchestrator(obj.get("settings_path"))
    return obj["orchestrator"]


def _status_row(label: str, ok: bool, detail: str = "") -> Tuple[str, str, str]:
    icon = "[green]✓[/green]" if ok else "[red]×[/red]"
    return (label, icon, detail)


def _status_table(status: ServiceStatus) -> Table:
    table = Table(show_header=False, box=None, padding=(0, 1))
    table.add_column("Check")
    table.add_column("", justify="center")
    table.add_column("Detail")
    rows = [
        _status_row("Installed", status.installed),
        _status_row("Running", status.running, escape(status.endpoint_url or "")),
        _status_row("Loaded model", status.model_id is not None, escape(status.model_id or "")),
        _status_row("Default model cached", status.model_cached),
    ]
    for row in rows:
        table.add_row(*row)
    return table


def _run(coro: Any) -> Any:
    """Run a host command, turning typed failures into a CLI error."""
    try:
        return asyncio.run(coro)
    except FoundryError as exc:
        logger.debug("[cli] Command failed: %s: %s", type(exc).__name__, exc)
        raise click.ClickException(str(exc)) from exc


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--settings",
    "settings_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Shared settings document to synchronize (overrides configuration)",
)
@click.option(
    "--log-dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Directory for the debug log file (default: ~/.foundrylink/logs)",
)
@click.option("--verbose", is_flag=True, help="Verbose output")
@click.pass_context
def cli(
    ctx: click.Context, settings_path: Optional[Path], log_dir: Optional[Path], verbose: bool
) -> None:
    """foundrylink - connect Foundry Local to post-processing settings"""
    if verbose:
        logger.set_console_level(logging.DEBUG)
    log_file = enable_file_logging(log_dir)
    obj = ctx.ensure_object(dict)
    obj["settings_path"] = settings_path
    logger.info(
        "[cli] Starting CLI invocation",
        extra={
            "command": ctx.invoked_subcommand,
            "settings_path": str(settings_path or ""),
            "log_file": str(log_file),
        },
    )


@cli.command(name="status")
@click.pass_context
def status_cmd(ctx: click.Context) -> None:
    """Show whether Foundry Local is installed, running and has its model"""
    status = _run(_orchestrator(ctx).get_status())
    console.print(_status_table(status))


@cli.command(name="install")
@click.option("--yes", is_flag=True, help="Install without asking for confirmation")
@click.pass_context
def install_cmd(ctx: click.Context, yes: bool) -> None:
    """Install Foundry Local with the platform package manager"""
    if not yes and not click.confirm("Install Foundry Local now?", default=False):
        console.print("[yellow]Installation cancelled.[/yellow]")
        return
    version = _run(_orchestrator(ctx).install())
    console.print(f"[green]Foundry Local {escape(version)} installed successfully.[/green]")


@cli.command(name="start")
@click.pass_context
def start_cmd(ctx: click.Context) -> None:
    """Start the service, load the default model and update settings"""
    config = _run(_orchestrator(ctx).start_and_configure())
    console.print(
        f"[green]Post-processing now uses[/green] {escape(config.model_id)} "
        f"[dim]at {escape(config.endpoint_url)}[/dim]"
    )


@cli.command(name="run-model")
@click.argument("name")
@click.pass_context
def run_model_cmd(ctx: click.Context, name: str) -> None:
    """Load NAME into the running service"""
    _run(_orchestrator(ctx).run_model(name))
    console.print(f"[green]Model {escape(name)} loaded.[/green]")


@cli.command(name="models")
@click.pass_context
def models_cmd(ctx: click.Context) -> None:
    """List models known to Foundry Local"""
    models = _run(_orchestrator(ctx).list_models())
    if not models:
        console.print("[dim]No models found.[/dim]")
        return
    for model in models:
        console.print(f"  {escape(model)}")


@cli.command(name="sync")
@click.pass_context
def sync_cmd(ctx: click.Context) -> None:
    """Run the full startup integration sequence once"""
    orchestrator = _orchestrator(ctx)
    state = asyncio.run(orchestrator.run())
    snapshot = orchestrator.snapshot()
    console.print(f"Integration state: [bold]{state.value}[/bold]")
    if state == OrchestrationState.NOT_INSTALLED:
        console.print("[yellow]Foundry Local is not installed. Run `foundrylink install` first.[/yellow]")
        return
    if snapshot.last_error:
        raise click.ClickException(snapshot.last_error)


def _render_view(view: NotificationView) -> None:
    if not view.visible:
        console.print(f"[dim]{view.state.value}[/dim]")
        return
    line = f"[bold]{escape(view.title)}[/bold] - {escape(view.description)}"
    if view.busy:
        line += f" [yellow](working, {view.elapsed_seconds}s)[/yellow]"
    else:
        line += f" [cyan]-> {escape(view.action_label)}[/cyan]"
    console.print(line)
    if view.status_error:
        console.print(f"[red]Status check failed: {escape(view.status_error)}[/red]")


@cli.command(name="watch")
@click.option("--interval", type=float, default=5.0, show_default=True, help="Seconds between status checks")
@click.option("--max-polls", type=int, default=None, help="Stop after this many checks")
@click.pass_context
def watch_cmd(ctx: click.Context, interval: float, max_polls: Optional[int]) -> None:
    """Poll status and show the setup prompt the host application would display"""
    machine = NotificationStateMachine(_orchestrator(ctx))
    state = asyncio.run(machine.poll(interval, max_polls=max_polls, on_view=_render_view))
    console.print(f"Final state: [bold]{state.value}[/bold]")


def main() -> None:
    """Main entry point."""
    try:
        cli()
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
        sys.exit(130)
    except SystemExit:
        raise
    except (RuntimeError, ValueError, OSError) as e:
        console.print(f"[red]Fatal error: {escape(str(e))}[/red]")
        logger.warning(
            "[cli] Fatal error in main CLI entrypoint: %s: %s",
            type(e).__name__,
            e,
        )
        sys.exit(1)


if __name__ == "__main__":
    main()
