"""
FORKYARD CLI — The Interface

  forkyard identity <seed>                 (show the derived identity)
  forkyard edit  --repo <path> --session   (exact-match edit + commit)
  forkyard write --repo <path> --session   (whole-file write + commit)

Plus utilities:
  - forkyard status        (check config + tools)
  - forkyard init <path>   (bootstrap .forkyard in a repo)
  - forkyard worktrees     (list agent worktrees)
  - forkyard discard       (remove a session's worktree)
"""

from __future__ import annotations

import asyncio
import shutil
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table

from forkyard import __codename__, __tagline__, __version__
from forkyard.config_loader import load_config
from forkyard.controller import Controller, ToolContext
from forkyard.errors import ForkyardError
from forkyard.identity import IsolationPolicy, derive_identity
from forkyard.workspace import GitRunner, WorkspaceManager, WorkspaceRegistry

load_dotenv()
load_dotenv(Path.home() / ".forkyard" / ".env")

app = typer.Typer(
    name="forkyard",
    help=f"{__codename__} — {__tagline__}",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__codename__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
):
    pass


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def identity(
    seed: str = typer.Argument(..., help="Session handle to derive from"),
    agent_name: Optional[str] = typer.Option(None, "--agent-name", "-a", help="Established <name>-<hash> to reuse"),
    policy: IsolationPolicy = typer.Option(IsolationPolicy.WT, "--policy", "-p", help="Isolation policy namespace"),
    repo: Optional[Path] = typer.Option(None, "--repo", "-r", help="Repository whose config to use"),
):
    """Show the identity a session handle derives to."""
    config = load_config(repo.resolve() if repo else None)
    ident = derive_identity(
        seed,
        known_process_name=agent_name,
        namespace=config.identity.namespace_for(policy),
        email_domain=config.identity.email_domain,
    )

    table = Table(title="Agent Identity", border_style="cyan")
    table.add_column("Property")
    table.add_column("Value")
    table.add_row("Hash", ident.hash)
    table.add_row("Author", f"{ident.user_name} <{ident.user_email}>")
    table.add_row("Branch", ident.branch_name)
    table.add_row("Workspace", ident.workspace_name)
    console.print(table)


@app.command()
def edit(
    repo: Path = typer.Option(..., "--repo", "-r", help="Path to the target repository"),
    session: str = typer.Option(..., "--session", "-s", help="Session handle"),
    file: str = typer.Option(..., "--file", "-f", help="File to edit"),
    old: str = typer.Option(..., "--old", help="Exact text to replace"),
    new: str = typer.Option(..., "--new", help="Replacement text"),
    replace_all: bool = typer.Option(False, "--all", help="Replace every occurrence"),
    description: Optional[str] = typer.Option(None, "--message", "-m", help="Commit message"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Apply an exact-match edit in the session's worktree and commit it."""
    _configure_logging(verbose)
    ctx = ToolContext(session_id=session)

    async def _run():
        async with Controller(repo) as controller:
            return await controller.edit(ctx, file, old, new, replace_all=replace_all, description=description)

    result = _guarded(_run)
    _print_result(result.output, result.metadata.diff)


@app.command()
def write(
    repo: Path = typer.Option(..., "--repo", "-r", help="Path to the target repository"),
    session: str = typer.Option(..., "--session", "-s", help="Session handle"),
    file: str = typer.Option(..., "--file", "-f", help="File to write"),
    description: str = typer.Option(..., "--message", "-m", help="Commit message"),
    content: Optional[str] = typer.Option(None, "--content", "-c", help="New file content"),
    source: Optional[Path] = typer.Option(None, "--from", help="Read new content from this file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Write a whole file in the session's worktree and commit it."""
    _configure_logging(verbose)
    if content is None and source is None:
        console.print("[red]Specify --content or --from[/]")
        raise typer.Exit(1)
    body = content if content is not None else source.read_text()
    ctx = ToolContext(session_id=session)

    async def _run():
        async with Controller(repo) as controller:
            return await controller.write(ctx, file, body, description)

    result = _guarded(_run)
    _print_result(result.output, result.metadata.diff)


@app.command()
def worktrees(
    repo: Path = typer.Option(..., "--repo", "-r", help="Path to the target repository"),
):
    """List agent worktrees under the workspaces root."""
    repo = repo.resolve()
    manager = WorkspaceManager(repo, load_config(repo), WorkspaceRegistry(), GitRunner(repo))
    entries = _guarded(manager.list_workspaces)

    if not entries:
        console.print("[dim]No agent worktrees.[/]")
        return

    table = Table(title="Agent Worktrees", border_style="cyan")
    table.add_column("Workspace")
    table.add_column("Branch")
    table.add_column("Path", style="dim")
    for entry in entries:
        branch = (entry.branch or "—").removeprefix("refs/heads/")
        table.add_row(entry.path.name, branch, str(entry.path))
    console.print(table)


@app.command()
def discard(
    repo: Path = typer.Option(..., "--repo", "-r", help="Path to the target repository"),
    session: str = typer.Option(..., "--session", "-s", help="Session handle whose worktree to remove"),
):
    """Force-remove a session's worktree. Its branch and commits are kept."""
    repo = repo.resolve()

    async def _run():
        async with Controller(repo) as controller:
            ident = controller.workspaces.identity_for(session)
            path = controller.workspaces.path_for(ident)
            if not path.exists():
                return None
            controller.registry.register(session, path, ident.branch_name)
            await controller.discard(session)
            return ident

    ident = _guarded(_run)
    if ident is None:
        console.print(f"[yellow]No worktree for session {session}[/]")
        raise typer.Exit(1)
    console.print(f"[green]✅ Removed worktree {ident.workspace_name}[/] [dim](branch {ident.branch_name} kept)[/]")


@app.command()
def status(
    repo: Optional[Path] = typer.Option(None, "--repo", "-r"),
):
    """Check FORKYARD configuration and readiness."""
    config = load_config(repo.resolve() if repo else None)

    cfg_table = Table(title="Configuration", border_style="cyan")
    cfg_table.add_column("Setting")
    cfg_table.add_column("Value")
    cfg_table.add_row("Workspaces root", str(config.workspace.root))
    cfg_table.add_row("Default policy", config.identity.default_policy.value)
    cfg_table.add_row("Email domain", config.identity.email_domain)
    cfg_table.add_row("Agent command", " ".join(config.supervisor.command))
    cfg_table.add_row("Startup timeout", f"{config.supervisor.startup_timeout}s")
    cfg_table.add_row(
        "Reply polling",
        f"{config.supervisor.poll_attempts} x {config.supervisor.poll_interval}s",
    )
    console.print(cfg_table)

    tools_table = Table(title="System Tools", border_style="cyan")
    tools_table.add_column("Tool")
    tools_table.add_column("Status")
    for tool in ["git", config.supervisor.command[0]]:
        found = shutil.which(tool)
        s = f"[green]✓ {found}[/]" if found else "[dim]✗ Not found[/]"
        tools_table.add_row(tool, s)
    console.print(tools_table)


@app.command()
def init(
    repo: Optional[Path] = typer.Argument(None, help="Path to repository"),
):
    """Initialize .forkyard config and the workspaces root in a repository."""
    repo = (repo or Path.cwd()).resolve()
    fy_dir = repo / ".forkyard"
    fy_dir.mkdir(exist_ok=True)

    config_path = fy_dir / "config.yaml"
    if not config_path.exists():
        config_path.write_text("""# FORKYARD repo-level config overrides
# These merge with the built-in defaults.

# Where agent worktrees live (relative to the repo root):
# workspace:
#   state_dir: ".agent"
#   worktree_dir: "wt"

# Commit author domain and branch namespaces:
# identity:
#   email_domain: "agents.example.com"
#   namespaces:
#     wt: "agents"

# Supervised agent server:
# supervisor:
#   command: ["opencode", "serve", "--port={port}"]
#   startup_timeout: 30
""")

    config = load_config(repo)
    root = repo / config.workspace.root
    root.mkdir(parents=True, exist_ok=True)
    gitignore = root / ".gitignore"
    if not gitignore.exists():
        gitignore.write_text("*\n")

    console.print(f"[green]✅ Initialized FORKYARD in {fy_dir}[/]")
    console.print(f"  Config:     {config_path}")
    console.print(f"  Worktrees:  {root}")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _guarded(factory):
    try:
        return asyncio.run(factory())
    except ForkyardError as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)


def _print_result(output: str, diff: str) -> None:
    console.print(f"[green]{output}[/]")
    if diff.strip():
        console.print(Panel(Syntax(diff, "diff", theme="ansi_dark"), title="Diff", border_style="dim"))


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    if verbose:
        logger.add(
            lambda msg: console.print(f"[dim]{msg}[/]", highlight=False),
            level="DEBUG",
            format="{time:HH:mm:ss} | {level:<7} | {message}",
        )
    else:
        logger.add(
            lambda msg: console.print(f"[dim]{msg}[/]", highlight=False),
            level="WARNING",
            format="{message}",
        )


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app()
