"""Loop configuration.

Layered, lowest to highest precedence:

1. ``RalphConfig`` defaults
2. ``.ralph/config.yaml`` in the workspace
3. Environment overrides (WARN_THRESHOLD, ROTATE_THRESHOLD, MAX_ITERATIONS,
   RALPH_MODEL, USE_BRANCH, OPEN_PR, SKIP_CONFIRM)
4. Explicit CLI flags
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from ralph.core.errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "config.yaml"

DEFAULT_AGENT_COMMAND = [
    "claude",
    "-p",
    "--dangerously-skip-permissions",
    "--verbose",
    "--output-format",
    "stream-json",
]

# env var -> (field, kind)
ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "WARN_THRESHOLD": ("warn_threshold", "int"),
    "ROTATE_THRESHOLD": ("rotate_threshold", "int"),
    "MAX_ITERATIONS": ("max_iterations", "int"),
    "RALPH_MODEL": ("model", "str"),
    "USE_BRANCH": ("branch", "str"),
    "OPEN_PR": ("open_pr", "bool"),
    "SKIP_CONFIRM": ("skip_confirm", "bool"),
}

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


class RalphConfig(BaseModel):
    """Effective settings for one loop invocation."""

    warn_threshold: int = Field(default=80_000, gt=0)  # Tokens before the one-time WARN
    rotate_threshold: int = Field(default=100_000, gt=0)  # Tokens before forced rotation
    max_iterations: int = Field(default=20, gt=0)  # Cap per loop invocation
    model: str = "opus"
    branch: str | None = None  # Work on this branch (created if missing)
    open_pr: bool = False  # Push + open a PR when the chain completes
    skip_confirm: bool = False
    prompt_size_estimate: int = Field(default=3000, ge=0)  # Bytes, for the fallback estimate
    watchdog_interval: float = Field(default=3.0, gt=0)
    display_interval: float = Field(default=0.5, gt=0)
    qc_timeout: int = Field(default=300, gt=0)  # Seconds for the verification sub-agent
    qc_enabled: bool = True
    max_chain_depth: int = Field(default=20, gt=0)
    iteration_pause: float = Field(default=2.0, ge=0)
    resume_on_exhaustion: bool = False  # Resume the agent session after a natural exit
    show_activity: bool = True  # Live activity display during iterations
    agent_command: list[str] = Field(default_factory=lambda: list(DEFAULT_AGENT_COMMAND))
    shims_dir: Path | None = None  # Prepended to PATH for the agent

    model_config = {"extra": "forbid"}

    @model_validator(mode="after")
    def validate_thresholds(self):
        if self.warn_threshold >= self.rotate_threshold:
            raise ValueError(
                f"warn_threshold ({self.warn_threshold}) must be below "
                f"rotate_threshold ({self.rotate_threshold})"
            )
        if not self.agent_command:
            raise ValueError("agent_command must not be empty")
        return self


def parse_bool(value: str) -> bool | None:
    """Parse an env-style boolean. Returns None when unrecognized."""
    lowered = value.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    return None


def env_overrides(environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    """Collect recognized environment overrides. Unparseable values are ignored."""
    environ = os.environ if environ is None else environ
    values: dict[str, Any] = {}
    for var, (field, kind) in ENV_OVERRIDES.items():
        raw = environ.get(var)
        if raw is None or raw.strip() == "":
            continue
        if kind == "int":
            try:
                values[field] = int(raw)
            except ValueError:
                logger.warning(f"Ignoring {var}={raw!r}: not an integer")
        elif kind == "bool":
            parsed = parse_bool(raw)
            if parsed is None:
                logger.warning(f"Ignoring {var}={raw!r}: not a boolean")
            else:
                values[field] = parsed
        else:
            values[field] = raw.strip()
    return values


def load_config_file(path: Path) -> dict[str, Any]:
    """Read a YAML config file. Missing file means no overrides."""
    if not path.exists():
        return {}
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping, got {type(data).__name__}")
    return data


def load_config(
    workspace: Path,
    cli_overrides: Mapping[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
) -> RalphConfig:
    """Build the effective configuration for ``workspace``.

    ``cli_overrides`` entries whose value is None are treated as "not given".
    """
    values: dict[str, Any] = {}
    values.update(load_config_file(Path(workspace) / ".ralph" / CONFIG_FILENAME))
    values.update(env_overrides(environ))
    if cli_overrides:
        values.update({k: v for k, v in cli_overrides.items() if v is not None})

    try:
        config = RalphConfig(**values)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e

    if config.open_pr and not config.branch:
        raise ConfigError("Opening a PR requires a branch (--branch or USE_BRANCH)")
    return config
