"""Outer loop: iterations across one task's lifetime and across the chain.

Per pass:

1. If the active task has every criterion checked, settle it: run the quality
   gate if it is unverified, then walk the chain to the next active task.
2. Otherwise run one iteration and act on its outcome:

   - COMPLETED with criteria remaining: keep iterating (the agent was wrong)
   - ROTATED: fresh session
   - STUCK: stop with exit 1
   - EXHAUSTED: keep iterating, optionally resuming the agent session

``max_iterations`` caps the iterations spent on one task; moving to the next
task restarts the count. Checked criteria always win over the signal that
ended the iteration.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path

from rich.console import Console

from ralph.core.chain import TaskChain
from ralph.core.config import RalphConfig
from ralph.core.git import GitOps
from ralph.core.iteration import DisplayFactory, IterationController, IterationResult
from ralph.core.locks import WorkspaceLock
from ralph.core.models import IterationOutcome
from ralph.core.prompts import PromptBuilder
from ralph.core.quality import QualityGate
from ralph.core.state import StateStore
from ralph.core.tasks import TaskFile

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1


@dataclass
class LoopResult:
    """Final state of one loop invocation."""

    exit_code: int
    reason: str  # complete | gutter | max_iterations
    iterations: int = 0
    task: Path | None = None


class RalphLoop:
    """Drives the agent until the chain completes, it gets stuck, or the cap hits."""

    def __init__(
        self,
        config: RalphConfig,
        workspace: Path,
        console: Console | None = None,
        controller: IterationController | None = None,
        git: GitOps | None = None,
        display_factory: DisplayFactory | None = None,
        sleep=time.sleep,
    ):
        self.config = config
        self.workspace = Path(workspace).absolute()
        self.console = console or Console()
        self.state = StateStore(self.workspace)
        self.controller = controller or IterationController(
            config, self.state, display_factory=display_factory
        )
        self.git = git or GitOps(self.workspace)
        self.prompts = PromptBuilder(self.state, branch=config.branch)
        self.chain = TaskChain(
            self.state.entry_task,
            tasks_dir=self.state.tasks_dir,
            state=self.state,
            max_depth=config.max_chain_depth,
        )
        self.gate = QualityGate(self.controller, self.prompts, self.state, timeout=config.qc_timeout)
        self._sleep = sleep

    # --- Lifecycle ---

    def run(self) -> LoopResult:
        """Run to completion. Raises LoopLockedError if another loop holds the workspace."""
        self.state.initialize()
        with WorkspaceLock(self.state.state_dir):
            try:
                return self._run()
            finally:
                self.state.reset_activity_log()

    def _prepare_git(self) -> None:
        if not self.git.is_repo():
            logger.warning("Workspace is not a git repository; skipping git setup")
            return
        if self.git.commit_all("ralph: initial commit before loop"):
            self.console.print("📦 Committed uncommitted changes")
        if self.config.branch:
            self.console.print(f"🌿 Using branch: [cyan]{self.config.branch}[/cyan]")
            self.git.checkout_branch(self.config.branch)

    def _finish(self, runs: int) -> LoopResult:
        self.console.rule("[bold green]🎉 ALL TASKS COMPLETE[/bold green]")
        self.state.log_progress(f"**Loop ended** - all tasks complete after {runs} iteration(s)")
        if self.config.open_pr and self.config.branch:
            self.console.print("📝 Opening pull request...")
            if not self.git.open_pull_request(self.config.branch):
                self.console.print("[yellow]⚠️  Could not create PR automatically.[/yellow]")
        return LoopResult(EXIT_SUCCESS, "complete", iterations=runs)

    # --- Task settlement ---

    def _verify(self, task: TaskFile, iteration: int) -> bool:
        """Run the quality gate on a fully checked task. True if it passed."""
        if not self.config.qc_enabled:
            task.mark_qc_passed()
            return True
        verdict = self.gate.run(task)
        if verdict.passed:
            self.console.print(f"[green]✅ QC verified:[/green] {task.name}")
            self.state.log_activity(f"Marked {task.name} as QC verified")
            return True
        self.console.print(
            f"[red]❌ QC failed ({verdict.describe()}):[/red] {task.name}. Unchecked and retrying..."
        )
        self.state.log_progress(
            f"**Session {iteration} ended** - ❌ QC FAILED for {task.name} - retrying"
        )
        return False

    def _activate(self, task: TaskFile) -> None:
        self.state.activate_task(task.path)
        snapshot = task.snapshot()
        self.console.print(
            f"📍 Current task: [bold]{task.name}[/bold] ({snapshot} criteria)  [dim]{task.path}[/dim]"
        )

    # --- Outcome handling ---

    def _report(self, result: IterationResult, task: TaskFile, iteration: int) -> bool:
        """Log one iteration outcome. False means stop the loop (gutter)."""
        session = f"**Session {iteration} ended**"
        if result.outcome == IterationOutcome.COMPLETED:
            self.state.log_progress(f"{session} - Agent signaled complete but criteria remain")
            self.console.print(
                "[yellow]⚠️  Agent signaled completion but unchecked criteria remain. "
                "Continuing...[/yellow]"
            )
        elif result.outcome == IterationOutcome.ROTATED:
            self.state.log_progress(f"{session} - 🔄 Context rotation (token limit reached)")
            self.console.print("🔄 Rotating to fresh context...")
        elif result.outcome == IterationOutcome.STUCK:
            self.state.log_progress(f"{session} - 🚨 GUTTER (agent stuck: {result.detail})")
            self.console.print(
                f"[bold red]🚨 Gutter detected ({result.detail}).[/bold red] "
                "Check .ralph/state/errors.log for details.\n"
                "   1. Check .ralph/state/guardrails.md for lessons\n"
                "   2. Manually fix the blocking issue\n"
                "   3. Re-run the loop"
            )
            return False
        else:
            remaining = result.criteria.remaining
            self.state.log_progress(
                f"{session} - Agent finished naturally ({remaining} criteria remaining)"
            )
            self.console.print(f"📋 Agent finished but {remaining} criteria remaining.")
        return True

    # --- Main loop ---

    def _run(self) -> LoopResult:
        self._prepare_git()

        self.console.print("🔗 Walking task chain...")
        task = self.chain.find_current()
        if task is None:
            self.console.rule("[bold green]🎉 ALL TASKS COMPLETE! Nothing to do.[/bold green]")
            return LoopResult(EXIT_SUCCESS, "complete", iterations=0)
        self._activate(task)

        runs = 0  # on the current task
        total = 0
        session_id: str | None = None
        while True:
            if task.is_complete():
                if task.qc_passed() or self._verify(task, self.state.get_iteration()):
                    self.state.log_progress(f"✅ {task.name} COMPLETE (QC verified)")
                    next_task = self.chain.find_current()
                    if next_task is None:
                        return self._finish(total)
                    if next_task.path.resolve() != task.path.resolve():
                        self.console.rule(f"📦 Moving to next task: {next_task.name}")
                        task = next_task
                        self._activate(task)
                        runs = 0
                        session_id = None
                        continue
                    # Chain cannot advance (structural error); keep working this task.
                else:
                    session_id = None

            if runs >= self.config.max_iterations:
                break
            runs += 1
            total += 1
            iteration = self.state.increment_iteration()

            self.console.rule(f"🐛 Ralph Iteration {iteration}")
            self.console.print(
                f"Task: {task.path.name}  Model: {self.config.model}  "
                f"Monitor: tail -f {self.state.activity_log}"
            )
            if session_id:
                self.console.print(f"Resuming session: {session_id}")
            self.state.log_progress(
                f"**Session {iteration} started** (model: {self.config.model})"
            )

            result = self.controller.run(
                task, self.prompts.iteration_prompt(task, iteration), session_id=session_id
            )

            if task.is_complete():
                self.state.log_progress(f"**Session {iteration} ended** - all criteria checked")
                session_id = None
                continue
            if not self._report(result, task, iteration):
                return LoopResult(EXIT_FAILURE, "gutter", iterations=total, task=task.path)

            if result.outcome == IterationOutcome.EXHAUSTED and self.config.resume_on_exhaustion:
                session_id = result.session_id
            else:
                session_id = None
            self._sleep(self.config.iteration_pause)

        self.state.log_progress(
            f"**Loop ended** - ⚠️ Max iterations ({self.config.max_iterations}) reached"
        )
        self.console.print(
            f"[yellow]⚠️  Max iterations ({self.config.max_iterations}) reached.[/yellow] "
            "Task may not be complete. Check .ralph/state/errors.log and "
            ".ralph/state/guardrails.md."
        )
        return LoopResult(EXIT_FAILURE, "max_iterations", iterations=total, task=task.path)
