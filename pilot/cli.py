"""
Pilot CLI — The Interface

Commands:
  - pilot init          (create the ./pilot workspace)
  - pilot upgrade       (refresh managed files, migrate STATE.json)
  - pilot doctor        (check prerequisites; BLOCKED.json on failure)
  - pilot run           (watch the workspace and drive the loop)
  - pilot run --once    (one build → verify → decide cycle)
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

import typer
import yaml
from dotenv import load_dotenv
from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from pilot.identity import __codename__, __tagline__, __version__, BANNER
from pilot.config_loader import EngineConfig, load_config, resolve_workspace_dir
from pilot.controller import Controller
from pilot.store import read_json
from pilot.workspace import Workspace, WorkspaceError

# Load .env from current directory or home
load_dotenv()
load_dotenv(Path.home() / ".pilot" / ".env")

app = typer.Typer(
    name="pilot",
    help=f"{__codename__} — {__tagline__}\nA local build/verify/decide loop for AI coding tools.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()


class CLIState:
    workspace: Path = Path("pilot")
    verbose: bool = False


_state = CLIState()


def version_callback(value: bool):
    if value:
        console.print(f"{__codename__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    workspace: Optional[str] = typer.Option(
        None,
        "--workspace",
        "-w",
        envvar="PILOT_WORKSPACE",
        help="Workspace directory (default: ./pilot)",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
):
    _state.workspace = resolve_workspace_dir(workspace)
    _state.verbose = verbose
    _configure_logging(verbose)


# ---------------------------------------------------------------------------
# Banner / output
# ---------------------------------------------------------------------------


def _print_banner():
    console.print(f"[bright_green]{BANNER}[/]")
    console.print(f"  [dim]v{__version__} — {__tagline__}[/]\n")


def _rel(path: Path) -> str:
    return os.path.relpath(path, Path.cwd())


def _print_blocked(workspace: Path) -> None:
    blocked = read_json(workspace / "BLOCKED.json")
    if not isinstance(blocked, dict):
        return
    body = f"[bold]{blocked.get('reason', '')}[/]\n\n[cyan]→ {blocked.get('action', '')}[/]"
    violations = blocked.get("violations") or []
    if violations:
        body += "\n\n" + "\n".join(f"  • {v}" for v in violations)
    console.print(Panel(body, title="🛑 BLOCKED", border_style="red"))


def _load(workspace: Path) -> EngineConfig:
    try:
        return load_config(workspace)
    except (OSError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid engine config: {e}[/]")
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def init():
    """Create the workspace folder (existing files are never overwritten)."""
    ws = _state.workspace
    try:
        created = Workspace(ws, _load(ws)).init(project_name=Path.cwd().name)
    except WorkspaceError as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)

    table = Table(title=f"pilot init: ok ({_rel(ws)})", border_style="cyan")
    table.add_column("File")
    table.add_column("Status")
    for name in created:
        table.add_row(name, "[green]✓ created[/]")
    if not created:
        table.add_row("-", "[dim]already initialised[/]")
    console.print(table)


@app.command()
def upgrade():
    """Refresh managed files and migrate STATE.json to the current schema."""
    ws = _state.workspace
    try:
        result = Workspace(ws, _load(ws)).upgrade()
    except WorkspaceError as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)

    if not result.ok:
        for rel in result.conflicts:
            console.print(f"[yellow]⚠ {rel}: local edits kept, new version in {rel}.new[/]")
        _print_blocked(ws)
        raise typer.Exit(2)
    console.print("pilot upgrade: ok")


@app.command()
def doctor():
    """Check prerequisites. Exit 0 when healthy, 2 when blocked."""
    ws = _state.workspace
    result = Workspace(ws, _load(ws)).doctor(Path.cwd())
    if not result.ok:
        _print_blocked(ws)
        raise typer.Exit(2)
    console.print("pilot doctor: ok")


@app.command()
def run(
    once: bool = typer.Option(False, "--once", help="Run a single cycle and exit"),
):
    """Drive the build → verify → decide loop."""
    _print_banner()
    ws = _state.workspace
    config = _load(ws)
    controller = Controller(ws, config)

    try:
        if not controller.prepare():
            _print_blocked(ws)
            raise typer.Exit(2)

        if once or config.run_once:
            code = controller.run_once()
            if code:
                _print_blocked(ws)
            raise typer.Exit(code)

        console.print(f"[cyan]Watching {_rel(ws)} (Ctrl+C to stop)[/]")
        try:
            controller.serve()
        except KeyboardInterrupt:
            console.print("\n[yellow]Stopped.[/]")
    finally:
        controller.close()


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    if verbose:
        logger.add(
            lambda msg: console.print(msg, style="dim", highlight=False, markup=False, end=""),
            level="DEBUG",
            format="{time:HH:mm:ss} | {level:<7} | {message}",
        )
    else:
        logger.add(
            lambda msg: console.print(msg, style="dim", highlight=False, markup=False, end=""),
            level="WARNING",
            format="{message}",
        )


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app()
