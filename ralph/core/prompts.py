"""Instruction payloads for the agent and the verification sub-agent.

Templates live in the package-internal ``ralph/prompts`` directory. Every
iteration prompt carries the current guardrails document and the tail of
errors.log so lessons survive context rotation.
"""

from __future__ import annotations

import logging
from pathlib import Path

from jinja2 import FileSystemLoader, StrictUndefined
from jinja2.sandbox import SandboxedEnvironment

from ralph.core.state import StateStore
from ralph.core.tasks import TaskFile

logger = logging.getLogger(__name__)

ITERATION_TEMPLATE = "iteration.j2"
QUALITY_CHECK_TEMPLATE = "quality_check.j2"
ALLOWED_TEMPLATES = frozenset([ITERATION_TEMPLATE, QUALITY_CHECK_TEMPLATE])
RECENT_ERROR_LINES = 30


class PromptBuilder:
    """Renders prompts from the workspace state."""

    def __init__(self, state: StateStore, branch: str | None = None):
        self.state = state
        self.branch = branch
        # SECURITY: template directory is package-internal, not user-controlled
        template_dir = Path(__file__).parent.parent / "prompts"
        self.jinja_env = SandboxedEnvironment(
            loader=FileSystemLoader(template_dir),
            undefined=StrictUndefined,
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
        )

    def _relative(self, path: Path) -> str:
        try:
            return str(Path(path).absolute().relative_to(self.state.workspace))
        except ValueError:
            return str(path)

    def render(self, template_name: str, **kwargs) -> str:
        if template_name not in ALLOWED_TEMPLATES:
            raise ValueError(
                f"Unknown template '{template_name}'. Allowed: {sorted(ALLOWED_TEMPLATES)}"
            )
        return self.jinja_env.get_template(template_name).render(**kwargs)

    def iteration_prompt(self, task: TaskFile, iteration: int) -> str:
        return self.render(
            ITERATION_TEMPLATE,
            iteration=iteration,
            task_path=self._relative(task.path),
            guardrails=self.state.read_guardrails().strip(),
            errors=self.state.recent_errors(RECENT_ERROR_LINES).strip(),
            test_command=task.test_command,
            criteria=str(task.snapshot()),
            branch=self.branch,
        )

    def quality_check_prompt(self, task: TaskFile) -> str:
        return self.render(
            QUALITY_CHECK_TEMPLATE,
            task_path=self._relative(task.path),
            checked=task.snapshot().done,
            test_command=task.test_command,
        )
