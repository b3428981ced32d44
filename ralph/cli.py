"""CLI entry point for the Ralph loop.

Commands:
- ralph init: Scaffold .ralph/ in a workspace
- ralph run: Run the agent loop until the task chain completes
- ralph status: Show the active task and recent activity
- ralph version: Show version information
"""

from __future__ import annotations

import logging
import shutil
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from ralph import __version__
from ralph.cli_ui.activity_monitor import ActivityMonitor
from ralph.core.chain import TaskChain
from ralph.core.config import CONFIG_FILENAME, RalphConfig, load_config
from ralph.core.errors import PrerequisiteError, RalphError
from ralph.core.git import GitOps
from ralph.core.loop import RalphLoop
from ralph.core.state import StateStore
from ralph.core.tasks import TaskFile

console = Console()

TASK_TEMPLATE = """---
task: Your task description here
test_command: "npm test"
---

# Task

Describe what you want to accomplish.

## Success Criteria

1. [ ] First thing to complete
2. [ ] Second thing to complete
3. [ ] Third thing to complete

## Context

Any additional context the agent should know.
"""

CONFIG_TEMPLATE = """# Ralph configuration for this workspace.
# Environment variables and CLI flags override these values.

# warn_threshold: 80000      # tokens before the agent is told to wrap up
# rotate_threshold: 100000   # tokens before a forced fresh context
# max_iterations: 20
# model: opus
# branch: ralph/my-feature
# open_pr: false
# qc_enabled: true
# qc_timeout: 300            # seconds for the verification sub-agent
# resume_on_exhaustion: false
"""


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def check_prerequisites(workspace: Path, config: RalphConfig) -> None:
    """Raise PrerequisiteError describing the first missing prerequisite."""
    state = StateStore(workspace)
    if not state.entry_task.exists():
        raise PrerequisiteError(
            f"No task file found at {state.entry_task}\n"
            "Run 'ralph init' and edit .ralph/tasks/RALPH_TASK.md to define your task."
        )
    agent = config.agent_command[0]
    if shutil.which(agent) is None:
        raise PrerequisiteError(
            f"{agent} CLI not found\nInstall via: npm install -g @anthropic-ai/claude-code"
        )
    if not GitOps(workspace).is_repo():
        raise PrerequisiteError(
            "Not a git repository\nRalph requires git for state persistence."
        )


def show_task_summary(task: TaskFile, config: RalphConfig) -> None:
    snapshot = task.snapshot()
    console.print(Panel(escape(task.summary(30)), title=f"📋 {escape(task.path.name)}"))

    table = Table(show_header=False, box=None)
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    table.add_row("Progress", f"{snapshot} criteria complete ({snapshot.remaining} remaining)")
    table.add_row("Model", config.model)
    table.add_row("Max iterations", str(config.max_iterations))
    table.add_row("Thresholds", f"warn {config.warn_threshold} / rotate {config.rotate_threshold}")
    if config.branch:
        table.add_row("Branch", config.branch + (" (PR on completion)" if config.open_pr else ""))
    console.print(table)


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose: bool) -> None:
    """Ralph - autonomous agent loop supervisor.

    Runs a coding agent over and over against a task file, rotating its
    context before it fills up and stopping it when it gets stuck.
    """
    configure_logging(verbose)


@main.command()
@click.argument("workspace", type=click.Path(file_okay=False, path_type=Path), default=".")
def init(workspace: Path) -> None:
    """Scaffold .ralph/ in WORKSPACE (default: current directory)."""
    state = StateStore(workspace)
    if not GitOps(state.workspace).is_repo():
        console.print("[yellow]⚠️  Not in a git repository. Ralph works best with git.[/yellow]")

    created = state.initialize()
    if not state.entry_task.exists():
        state.entry_task.write_text(TASK_TEMPLATE, encoding="utf-8")
        created.append(state.entry_task)
    config_path = state.ralph_dir / CONFIG_FILENAME
    if not config_path.exists():
        config_path.write_text(CONFIG_TEMPLATE, encoding="utf-8")
        created.append(config_path)

    if not created:
        console.print("[yellow]Workspace already initialized[/yellow]")
        return

    listing = "\n".join(f"- {p.relative_to(state.workspace)}" for p in created)
    console.print(
        Panel(
            f"[green]Ralph initialized![/green]\n\nCreated:\n{listing}\n\n"
            "Edit .ralph/tasks/RALPH_TASK.md to define your task, then run 'ralph run'.",
            title="Ralph Initialized",
        )
    )


@main.command()
@click.argument("workspace", type=click.Path(exists=True, file_okay=False, path_type=Path), default=".")
@click.option("--max-iterations", "-n", type=int, help="Maximum iterations (default 20)")
@click.option("--model", "-m", help="Agent model (default opus)")
@click.option("--branch", help="Work on this branch")
@click.option("--pr", "open_pr", is_flag=True, help="Open a PR when complete (requires --branch)")
@click.option("--yes", "-y", "skip_confirm", is_flag=True, help="Skip confirmation")
@click.option("--warn-threshold", type=int, help="Tokens before the wrap-up warning")
@click.option("--rotate-threshold", type=int, help="Tokens before a forced rotation")
@click.option("--no-qc", is_flag=True, help="Skip the verification sub-agent")
@click.option("--no-display", is_flag=True, help="Disable the live activity display")
def run(
    workspace: Path,
    max_iterations: int | None,
    model: str | None,
    branch: str | None,
    open_pr: bool,
    skip_confirm: bool,
    warn_threshold: int | None,
    rotate_threshold: int | None,
    no_qc: bool,
    no_display: bool,
) -> None:
    """Run the agent loop in WORKSPACE (default: current directory)."""
    overrides = {
        "max_iterations": max_iterations,
        "model": model,
        "branch": branch,
        "open_pr": True if open_pr else None,
        "skip_confirm": True if skip_confirm else None,
        "warn_threshold": warn_threshold,
        "rotate_threshold": rotate_threshold,
    }
    if no_qc:
        overrides["qc_enabled"] = False
    if no_display:
        overrides["show_activity"] = False

    try:
        config = load_config(workspace, cli_overrides=overrides)
        check_prerequisites(workspace, config)
    except RalphError as e:
        console.print(f"[red]❌ {escape(str(e))}[/red]")
        sys.exit(1)

    state = StateStore(workspace)
    task = TaskChain(
        state.entry_task, state.tasks_dir, max_depth=config.max_chain_depth
    ).find_current()
    if task is None:
        console.print("[green]🎉 All tasks complete! Nothing to do.[/green]")
        return

    show_task_summary(task, config)
    if not config.skip_confirm and not click.confirm("Start Ralph loop?", default=True):
        console.print("Aborted.")
        return

    display_factory = None
    if config.show_activity:

        def display_factory(parser, active_task):
            return ActivityMonitor(
                parser, state, active_task, console=console, interval=config.display_interval
            )

    loop = RalphLoop(config, workspace, console=console, display_factory=display_factory)
    try:
        result = loop.run()
    except RalphError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted. State is saved; re-run to continue.[/yellow]")
        sys.exit(130)

    if result.exit_code != 0:
        sys.exit(result.exit_code)


@main.command()
@click.argument("workspace", type=click.Path(exists=True, file_okay=False, path_type=Path), default=".")
def status(workspace: Path) -> None:
    """Show the active task, its progress and recent activity."""
    state = StateStore(workspace)
    if not state.entry_task.exists():
        console.print("[yellow]No task file found. Run 'ralph init' first.[/yellow]")
        return

    chain = TaskChain(state.entry_task, state.tasks_dir)
    table = Table(title="Task Chain")
    table.add_column("Task", style="cyan")
    table.add_column("File")
    table.add_column("Criteria", justify="right")
    table.add_column("QC")
    for task in chain.walk():
        table.add_row(
            escape(task.name),
            task.path.name,
            str(task.snapshot()),
            "[green]passed[/green]" if task.qc_passed() else "-",
        )
    console.print(table)

    current = chain.find_current()
    if current is None:
        console.print("[green]🎉 All tasks complete![/green]")
    else:
        console.print(
            f"Active: [bold]{escape(current.name)}[/bold] ({current.path.name}), "
            f"iteration {state.get_iteration()}"
        )

    recent = state.recent_activity(5)
    if recent:
        console.print(Panel("\n".join(escape(line) for line in recent), title="Recent Activity"))


@main.command()
def version() -> None:
    """Show version information."""
    console.print(f"Ralph v{__version__}")
    console.print("Autonomous agent loop supervisor")


if __name__ == "__main__":
    main()
