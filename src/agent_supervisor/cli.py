"""Command-line interface for the agent supervisor."""

import asyncio
import logging
import os
import signal
import sys
import time
from pathlib import Path
from typing import Optional

import typer
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from agent_supervisor import __version__
from agent_supervisor.config import SupervisorSettings, load_settings
from agent_supervisor.constants import AGENT_LOCK_NAME
from agent_supervisor.core import LifecycleCoordinator, LockManager
from agent_supervisor.devhook import create_devhook_id, get_devhook_id, get_devhook_path
from agent_supervisor.errors import Aborted, SupervisorError
from agent_supervisor.models import ExitState, LaunchSpec
from agent_supervisor.utils import CancellationToken, describe_pid, format_duration, format_exit

app = typer.Typer(
    rich_markup_mode="rich",
    help="Launch a local agent server, wait until it is healthy and keep it supervised",
    context_settings={"help_option_names": ["-h", "--help"]},
)
console = Console(stderr=True)


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        console.print(f"Agent Supervisor v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version", "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    """Agent Supervisor."""


def configure_logging(settings: SupervisorSettings) -> None:
    """Configure stdlib logging from settings."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


async def supervise(
    settings: SupervisorSettings,
    command: str,
    args: list[str],
    lock: bool,
    api_url: Optional[str],
) -> int:
    """Launch the agent, stream its output and wait for it to exit."""
    cancel = CancellationToken("cli")
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, cancel.cancel, sig.name)
        except (NotImplementedError, RuntimeError):
            # Windows event loops do not support signal handlers
            pass

    spec = LaunchSpec(
        command=command,
        args=args,
        cwd=settings.project_path,
        lock_path=settings.data_dir / AGENT_LOCK_NAME if lock else None,
        api_server_url=api_url,
    )
    coordinator = LifecycleCoordinator(settings)

    def write_stdout(text: str) -> None:
        sys.stdout.write(text)
        sys.stdout.flush()

    def write_stderr(text: str) -> None:
        sys.stderr.write(text)
        sys.stderr.flush()

    def report_exit(code: Optional[int], sig: Optional[str]) -> None:
        style = "green" if code == 0 else "yellow"
        console.print(f"[{style}]Agent exited with {format_exit(code, sig)}[/{style}]")

    if lock:
        settings.data_dir.mkdir(parents=True, exist_ok=True)

    started = time.monotonic()
    handle = await coordinator.launch(
        spec, cancel=cancel, on_stdout=write_stdout, on_stderr=write_stderr, on_exit=report_exit,
    )
    elapsed = format_duration(time.monotonic() - started)
    console.print(
        f"[green]✓ Agent ready at {handle.endpoint.base_url}[/green] "
        f"[dim](pid {handle.pid}, {elapsed})[/dim]"
    )

    try:
        exit_state: ExitState = await handle.wait()
    finally:
        await handle.aclose()

    if cancel.cancelled:
        return 130 if cancel.reason == "SIGINT" else 143
    if exit_state.code is not None:
        return exit_state.code
    return 1


@app.command(context_settings={"allow_extra_args": True, "ignore_unknown_options": True})
def run(
    command: str = typer.Argument(..., help="Agent executable to launch"),
    args: Optional[list[str]] = typer.Argument(None, help="Arguments passed to the agent"),
    project_path: Optional[Path] = typer.Option(
        None,
        "--project-path", "--path",
        help="Project directory the agent runs in",
        envvar="AGENT_SUPERVISOR_PROJECT_PATH",
    ),
    lock: bool = typer.Option(
        True,
        "--lock/--no-lock",
        help="Hold the project lock while the agent runs",
    ),
    api_url: Optional[str] = typer.Option(
        None,
        "--api-url",
        help="API server URL handed to the agent",
        envvar="AGENT_SUPERVISOR_API_SERVER_URL",
    ),
    log_level: Optional[str] = typer.Option(
        None,
        "--log-level",
        help="Logging level (DEBUG, INFO, WARNING, ERROR)",
        envvar="AGENT_SUPERVISOR_LOG_LEVEL",
    ),
) -> None:
    """Run an agent server under supervision.

    The agent receives PORT and HOST in its environment and must answer
    [cyan]GET /_agent/health[/cyan] once it is ready. Ctrl-C stops it.
    """
    settings_kwargs = {}
    if project_path is not None:
        settings_kwargs["project_path"] = project_path
    if log_level is not None:
        settings_kwargs["log_level"] = log_level
    settings = load_settings(**settings_kwargs)
    configure_logging(settings)

    console.print(Panel(
        f"[bold cyan]Agent Supervisor v{__version__}[/bold cyan]\n\n"
        f"Project: {settings.project_path}\n"
        f"Command: {' '.join([command, *(args or [])])}\n"
        f"Lock: {'Enabled' if lock else 'Disabled'}",
        title="Starting agent",
        box=box.ROUNDED,
    ))

    try:
        exit_code = asyncio.run(supervise(settings, command, list(args or []), lock, api_url))
    except Aborted:
        console.print("[yellow]Startup aborted[/yellow]")
        raise typer.Exit(130)
    except SupervisorError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    raise typer.Exit(exit_code)


@app.command()
def lock_status(
    path: Path = typer.Argument(..., help="Locked resource (without the .lock suffix)"),
) -> None:
    """Show whether a resource is locked and by which process."""
    info = LockManager().get_lock_info(path)

    table = Table(title="Lock Status", box=box.ROUNDED, show_lines=True)
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Resource", str(path.expanduser().resolve()))
    table.add_row("Locked", "yes" if info.locked else "no")
    if info.pid is not None:
        name = describe_pid(info.pid) if info.locked else None
        table.add_row("Holder PID", str(info.pid) if info.locked else f"{info.pid} (stale)")
        if name:
            table.add_row("Holder", name)

    console.print(table)


@app.command()
def devhook_id(
    project_path: Optional[Path] = typer.Option(
        None,
        "--project-path", "--path",
        help="Project directory",
        envvar="AGENT_SUPERVISOR_PROJECT_PATH",
    ),
    create: bool = typer.Option(False, "--create", help="Create the identifier if it does not exist"),
) -> None:
    """Print the devhook identifier of a project."""
    directory = (project_path or Path.cwd()).expanduser().resolve()
    devhook = create_devhook_id(directory) if create else get_devhook_id(directory)
    if devhook is None:
        console.print(f"[yellow]No devhook identifier at {get_devhook_path(directory)}[/yellow]")
        console.print("[dim]Run with --create to generate one[/dim]")
        raise typer.Exit(1)
    typer.echo(devhook)


@app.command()
def show_config() -> None:
    """Show current configuration from all sources."""
    settings = load_settings()

    table = Table(
        title="Current Configuration",
        box=box.ROUNDED,
        show_lines=True,
    )

    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")
    table.add_column("Source", style="dim")

    prefix = settings.model_config.get("env_prefix", "")
    field_sources = settings.model_fields_set

    for field_name in type(settings).model_fields:
        value = getattr(settings, field_name)

        if field_name in field_sources:
            env_key = f"{prefix}{field_name.upper()}"
            source = f"env: {env_key}" if os.getenv(env_key) is not None else "explicit"
        else:
            source = "default"

        display_value = value.value if hasattr(value, "value") else str(value)
        table.add_row(field_name, str(display_value), source)

    console.print(table)

    console.print("\n[dim]Environment:[/dim]")
    console.print(f"  Config file: {settings.model_config.get('env_file', '.env')}")
    console.print(f"  Prefix: {prefix}")


if __name__ == "__main__":
    app()
