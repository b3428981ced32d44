# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the Ralph test suite.

This module provides:
- An initialized workspace (.ralph/ tree) and its StateStore
- A task-file factory
- Builders for stream-json records in the shape the agent CLI emits
- A fake agent: a tiny Python script that replays scripted stream-json

Usage:
    All fixtures in this file are automatically available in test modules.
"""

import json
import sys
import textwrap
from collections.abc import Callable
from pathlib import Path

import pytest

from ralph.core.config import RalphConfig
from ralph.core.state import StateStore
from ralph.core.tasks import TaskFile


# =============================================================================
# Workspace Fixtures
# =============================================================================


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """Workspace with an initialized .ralph/ tree (no task files yet)."""
    root = tmp_path / "ws"
    root.mkdir()
    StateStore(root).initialize()
    return root


@pytest.fixture
def state(workspace: Path) -> StateStore:
    return StateStore(workspace)


@pytest.fixture
def make_task(state: StateStore) -> Callable[..., TaskFile]:
    """Factory writing a task file into .ralph/tasks/.

    Args:
        name: file name (default RALPH_TASK.md, the chain entry)
        criteria: list of bools, one checklist item per entry (True = checked)
        next_task: successor reference for the header
        qc_passed: write ``quality_check_passed: true``
        header: write a header block at all
        body: extra prose appended after the checklist

    Example:
        def test_x(make_task):
            task = make_task(criteria=[True, False])
            assert task.snapshot().done == 1
    """

    def _make(
        name: str = "RALPH_TASK.md",
        criteria: list[bool] | None = None,
        next_task: str | None = None,
        qc_passed: bool = False,
        header: bool = True,
        task: str = "Build the thing",
        body: str = "",
    ) -> TaskFile:
        lines = []
        if header:
            lines.append("---")
            lines.append(f"task: {task}")
            lines.append('test_command: "pytest -q"')
            if next_task:
                lines.append(f"next_task: {next_task}")
            if qc_passed:
                lines.append("quality_check_passed: true")
            lines.append("---")
        lines += ["", "# Task", "", "## Success Criteria", ""]
        for i, done in enumerate(criteria if criteria is not None else [False], start=1):
            mark = "x" if done else " "
            lines.append(f"{i}. [{mark}] Criterion {i}")
        if body:
            lines += ["", body]
        path = state.tasks_dir / name
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return TaskFile(path)

    return _make


# =============================================================================
# Stream Record Builders
# =============================================================================


class StreamRecords:
    """Builders for agent stream-json records (as JSON lines)."""

    @staticmethod
    def init(session_id: str = "sess-1", model: str = "opus") -> str:
        return json.dumps(
            {"type": "system", "subtype": "init", "session_id": session_id, "model": model}
        )

    @staticmethod
    def text(text: str, output_tokens: int = 0, cache_read: int = 0, cache_creation: int = 0) -> str:
        message = {"content": [{"type": "text", "text": text}]}
        if output_tokens or cache_read or cache_creation:
            message["usage"] = {
                "output_tokens": output_tokens,
                "cache_read_input_tokens": cache_read,
                "cache_creation_input_tokens": cache_creation,
            }
        return json.dumps({"type": "assistant", "message": message})

    @staticmethod
    def tool_use(name: str, tool_input: dict, tool_id: str = "toolu_1") -> str:
        return json.dumps(
            {
                "type": "assistant",
                "message": {
                    "content": [
                        {"type": "tool_use", "id": tool_id, "name": name, "input": tool_input}
                    ]
                },
            }
        )

    @staticmethod
    def bash(command: str, tool_id: str = "toolu_1") -> str:
        return StreamRecords.tool_use("Bash", {"command": command}, tool_id)

    @staticmethod
    def write(path: str, content: str = "x", tool_id: str = "toolu_w") -> str:
        return StreamRecords.tool_use("Write", {"file_path": path, "content": content}, tool_id)

    @staticmethod
    def tool_result(tool_id: str = "toolu_1", content: str = "ok", is_error: bool = False) -> str:
        return json.dumps(
            {
                "type": "user",
                "message": {
                    "content": [
                        {
                            "type": "tool_result",
                            "tool_use_id": tool_id,
                            "content": content,
                            "is_error": is_error,
                        }
                    ]
                },
            }
        )

    @staticmethod
    def file_read(path: str, content: str, tool_id: str = "toolu_r") -> str:
        return json.dumps(
            {
                "type": "user",
                "message": {
                    "content": [{"type": "tool_result", "tool_use_id": tool_id, "content": content}]
                },
                "tool_use_result": {
                    "type": "text",
                    "file": {
                        "filePath": path,
                        "content": content,
                        "numLines": content.count("\n") + 1,
                    },
                },
            }
        )

    @staticmethod
    def result(duration_ms: int = 1200, cost: float = 0.05) -> str:
        return json.dumps({"type": "result", "duration_ms": duration_ms, "total_cost_usd": cost})


@pytest.fixture
def records() -> type[StreamRecords]:
    return StreamRecords


# =============================================================================
# Fake Agent
# =============================================================================


FAKE_AGENT_SCRIPT = textwrap.dedent(
    """\
    import json
    import re
    import subprocess
    import sys
    import time
    from pathlib import Path

    STEPS = json.loads(Path(__file__).with_suffix(".json").read_text())

    for step in STEPS:
        if "line" in step:
            print(step["line"], flush=True)
        elif "sleep" in step:
            time.sleep(step["sleep"])
        elif "check_all" in step:
            path = Path(step["check_all"])
            path.write_text(re.sub(r"\\[ \\]", "[x]", path.read_text()))
        elif "spawn" in step:
            opts = step["spawn"]
            out = None if opts.get("hold_output", True) else subprocess.DEVNULL
            child = subprocess.Popen(
                [sys.executable, "-c", "import time; time.sleep(%s)" % opts["sleep"]],
                stdout=out,
                stderr=out,
            )
            Path(opts["pidfile"]).write_text(str(child.pid))
        elif "exit" in step:
            sys.exit(step["exit"])
    """
)


@pytest.fixture
def fake_agent(tmp_path: Path) -> Callable[..., RalphConfig]:
    """Factory returning a RalphConfig whose agent replays scripted steps.

    Steps are dicts: {"line": str} prints a line, {"sleep": s} sleeps,
    {"check_all": path} checks every box in a task file, {"exit": code} exits,
    {"spawn": {"sleep": s, "pidfile": path, "hold_output": bool}} starts a
    sleeping child (sharing the agent's output unless hold_output is false)
    and writes its pid.

    Example:
        config = fake_agent([{"line": records.text("<ralph>COMPLETE</ralph>")}])
    """
    counter = {"n": 0}

    def _make(steps: list[dict], **config_overrides) -> RalphConfig:
        counter["n"] += 1
        script = tmp_path / f"fake_agent_{counter['n']}.py"
        script.write_text(FAKE_AGENT_SCRIPT, encoding="utf-8")
        script.with_suffix(".json").write_text(json.dumps(steps), encoding="utf-8")
        defaults = {
            "agent_command": [sys.executable, str(script)],
            "watchdog_interval": 0.2,
            "iteration_pause": 0,
            "show_activity": False,
        }
        defaults.update(config_overrides)
        return RalphConfig(**defaults)

    return _make
