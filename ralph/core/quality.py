"""Quality gate: independent verification of checked criteria.

Runs only when a task has every criterion checked and no
``quality_check_passed`` flag. A short-lived verification sub-agent (same
mechanics as a normal iteration, bounded by ``qc_timeout``) answers PASS,
FAIL or FAIL:N.

Verification is advisory: a timeout or a run that ends without a verdict
counts as PASS so the chain can never stall here.
"""

from __future__ import annotations

import logging

from ralph.core.errors import TaskFileError
from ralph.core.iteration import IterationController
from ralph.core.models import QCVerdict
from ralph.core.prompts import PromptBuilder
from ralph.core.state import StateStore
from ralph.core.tasks import Criterion, TaskFile

logger = logging.getLogger(__name__)


class QualityGate:
    """Runs the verification sub-agent and applies its verdict to the task."""

    def __init__(
        self,
        controller: IterationController,
        prompts: PromptBuilder,
        state: StateStore,
        timeout: float = 300,
    ):
        self.controller = controller
        self.prompts = prompts
        self.state = state
        self.timeout = timeout

    @staticmethod
    def needs_verification(task: TaskFile) -> bool:
        return task.is_complete() and not task.qc_passed()

    def verify(self, task: TaskFile) -> QCVerdict:
        """Run the sub-agent once. Never raises on agent misbehavior."""
        self.state.log_activity(f"QC START: verifying {task.path.name}")
        logger.info(f"Running quality check on {task.path.name} (timeout {self.timeout}s)")

        result = self.controller.run(
            task,
            self.prompts.quality_check_prompt(task),
            verification=True,
            timeout=self.timeout,
        )
        if result.verdict is not None:
            return result.verdict

        reason = "timed out" if result.timed_out else f"ended without a verdict ({result.outcome.value})"
        logger.warning(f"Quality check {reason}; defaulting to PASS")
        self.state.log_activity(f"QC PASS (default): verifier {reason}")
        return QCVerdict.default_pass(timed_out=result.timed_out)

    def apply(self, task: TaskFile, verdict: QCVerdict) -> Criterion | None:
        """Write the verdict into the task file.

        PASS sets the verified flag. FAIL:N unchecks the Nth checked criterion;
        bare FAIL, or an N past the end, unchecks the last checked one.
        Returns the criterion that was unchecked, if any.
        """
        if verdict.passed:
            task.mark_qc_passed()
            self.state.log_progress(f"**QC PASS**: {task.path.name} verified")
            return None

        unchecked = None
        if verdict.criterion is not None:
            unchecked = task.uncheck_criterion(verdict.criterion)
        if unchecked is None:
            unchecked = task.uncheck_last()

        label = unchecked.text if unchecked else "no checked criterion found"
        self.state.log_error(f"QC FAIL ({verdict.describe()}) in {task.path.name}: {label}")
        self.state.log_progress(
            f"**QC FAIL** ({verdict.describe()}): {task.path.name}, unchecked: {label}"
        )
        return unchecked

    def run(self, task: TaskFile) -> QCVerdict:
        """Verify and apply in one step."""
        verdict = self.verify(task)
        try:
            self.apply(task, verdict)
        except TaskFileError as e:
            logger.error(f"Could not record QC verdict for {task.path.name}: {e}")
            self.state.log_error(f"QC verdict {verdict.describe()} not recorded: {e}")
        return verdict
