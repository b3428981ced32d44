"""Agent subprocess launch.

The agent is an opaque CLI that takes a prompt as its last argument and
writes stream-json on stdout. It runs in its own session (process group) so
the whole tree can be torn down, with stderr folded into stdout so the
parser sees, and drops, any free-text noise in arrival order.
"""

from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path

from ralph.core.config import RalphConfig
from ralph.core.errors import AgentLaunchError

logger = logging.getLogger(__name__)

# Keep every tool the agent shells out to from waiting on a terminal.
HARDENED_ENV = {
    "CI": "1",
    "npm_config_yes": "true",
    "npm_config_audit": "false",
    "npm_config_fund": "false",
    "GIT_TERMINAL_PROMPT": "0",
    "GIT_EDITOR": ":",
    "EDITOR": ":",
    "PAGER": "cat",
}


def hardened_env(shims_dir: Path | None = None, base: dict[str, str] | None = None) -> dict[str, str]:
    """Environment for the agent: caller env plus non-interactive overrides."""
    env = dict(os.environ if base is None else base)
    env.update(HARDENED_ENV)
    if shims_dir is not None and Path(shims_dir).is_dir():
        env["PATH"] = f"{shims_dir}{os.pathsep}{env.get('PATH', '')}"
    return env


class AgentRunner:
    """Builds the agent argv and spawns it in the workspace."""

    def __init__(self, config: RalphConfig, workspace: Path):
        self.config = config
        self.workspace = Path(workspace)

    def build_command(self, prompt: str, session_id: str | None = None) -> list[str]:
        argv = list(self.config.agent_command)
        argv += ["--model", self.config.model]
        if session_id:
            argv.append(f"--resume={session_id}")
        argv.append(prompt)
        return argv

    def spawn(self, prompt: str, session_id: str | None = None) -> subprocess.Popen:
        """Start the agent. Raises AgentLaunchError if it cannot be executed."""
        argv = self.build_command(prompt, session_id)
        logger.info(f"Spawning agent: {' '.join(argv[:4])}... (model={self.config.model})")
        try:
            return subprocess.Popen(
                argv,
                cwd=str(self.workspace),
                env=hardened_env(self.config.shims_dir),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                start_new_session=True,
            )
        except FileNotFoundError as e:
            raise AgentLaunchError(
                f"Agent CLI '{argv[0]}' not found. Install it or set agent_command."
            ) from e
        except PermissionError as e:
            raise AgentLaunchError(f"Agent CLI '{argv[0]}' is not executable: {e}") from e
