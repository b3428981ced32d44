"""Tests for prompt rendering."""

import pytest

from ralph.core.prompts import PromptBuilder


class TestIterationPrompt:
    """Tests for the main iteration prompt."""

    def test_contains_task_and_sigils(self, state, make_task):
        task = make_task(criteria=[True, False])
        prompt = PromptBuilder(state).iteration_prompt(task, iteration=3)
        assert prompt.startswith("# Ralph Iteration 3")
        assert ".ralph/tasks/RALPH_TASK.md" in prompt
        assert "<ralph>COMPLETE</ralph>" in prompt
        assert "<ralph>GUTTER</ralph>" in prompt
        assert "pytest -q" in prompt
        assert "1/2" in prompt

    def test_carries_lessons_and_errors(self, state, make_task):
        state.add_guardrail("- `npm init` blocks waiting for input -> use -y")
        state.log_error("SHELL FAIL: make → exit 2 (attempt 1)")
        prompt = PromptBuilder(state).iteration_prompt(make_task(), iteration=1)
        assert "`npm init` blocks waiting for input" in prompt
        assert "SHELL FAIL: make" in prompt

    def test_branch_only_when_set(self, state, make_task):
        task = make_task()
        assert "ralph/feature" in PromptBuilder(state, branch="ralph/feature").iteration_prompt(task, 1)
        assert "You are working on branch" not in PromptBuilder(state).iteration_prompt(task, 1)

    def test_without_test_command(self, state, make_task):
        prompt = PromptBuilder(state).iteration_prompt(make_task(header=False), iteration=1)
        assert "check the task file" in prompt


class TestQualityCheckPrompt:
    """Tests for the verification prompt."""

    def test_counts_checked_items(self, state, make_task):
        task = make_task(criteria=[True, False, True])
        prompt = PromptBuilder(state).quality_check_prompt(task)
        assert "There are 2 checked criteria" in prompt
        assert "<qc>PASS</qc>" in prompt
        assert "<qc>FAIL:N</qc>" in prompt


def test_unknown_template_rejected(state):
    with pytest.raises(ValueError, match="Unknown template"):
        PromptBuilder(state).render("../../etc/passwd")
