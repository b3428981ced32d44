"""Known-blocking interactive invocations.

An interactive command (a REPL, an editor-backed commit, a prompting
initializer) never returns inside a headless agent session. The table below
is matched twice per iteration:

- against the command text the agent *declares* in a shell tool call
  (StreamParser), and
- against the command lines of processes actually running under the agent
  (ProcessWatchdog).

Add new entries here; both detection paths pick them up.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

# Start of a command in shell text: line start or after a separator. A single
# pipe is not one: the next command reads the pipe, not the terminal.
_COMMAND_PREFIX = r"(?:^|(?:\|\||[;&(])\s*|\n\s*)"
# Start of an executable in a process command line: start, whitespace or a path.
_PROCESS_PREFIX = r"(?:^|[\s/])"


@dataclass(frozen=True)
class BlockingPattern:
    """One interactive invocation and its non-interactive alternative.

    ``pattern`` matches the executable and subcommand. ``safe_flags`` matches
    anywhere in the text and, if found, marks the invocation non-interactive.
    """

    name: str
    pattern: str
    hint: str
    safe_flags: str | None = None
    _command_re: re.Pattern = field(init=False, repr=False, compare=False)
    _process_re: re.Pattern = field(init=False, repr=False, compare=False)
    _safe_re: re.Pattern | None = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        # frozen dataclass: compiled regexes are cached via object.__setattr__
        object.__setattr__(self, "_command_re", re.compile(_COMMAND_PREFIX + self.pattern))
        object.__setattr__(self, "_process_re", re.compile(_PROCESS_PREFIX + self.pattern))
        object.__setattr__(
            self, "_safe_re", re.compile(self.safe_flags) if self.safe_flags else None
        )

    def _is_safe(self, text: str) -> bool:
        return self._safe_re is not None and self._safe_re.search(text) is not None

    def matches_command(self, command: str) -> bool:
        """Check declared shell command text."""
        return bool(self._command_re.search(command.strip())) and not self._is_safe(command)

    def matches_process(self, cmdline: str) -> bool:
        """Check a live process command line (argv joined by spaces)."""
        return bool(self._process_re.search(cmdline.strip())) and not self._is_safe(cmdline)


# Bare interpreter: nothing after it but whitespace, end of text, or a separator.
_BARE = r"(?=\s*(?:$|[;&|)]))"

BLOCKING_PATTERNS: tuple[BlockingPattern, ...] = (
    BlockingPattern(
        name="npm init",
        pattern=r"npm\s+init\b",
        safe_flags=r"(?:^|\s)(?:-y|--yes)\b",
        hint="use 'npm init -y' or skip if package.json exists",
    ),
    BlockingPattern(
        name="git commit",
        pattern=r"git\s+commit\b",
        safe_flags=(
            r"(?:^|\s)(?:-[a-zA-Z]*[mF]|--message|--file|--no-edit"
            r"|-C|--reuse-message|--fixup)\b"
        ),
        hint="use 'git commit -m \"msg\"' or '--no-edit' for amend",
    ),
    BlockingPattern(
        name="python REPL",
        pattern=r"python(?:3(?:\.\d+)?)?" + _BARE,
        hint="use 'python script.py' or 'python -c \"...\"'",
    ),
    BlockingPattern(
        name="node REPL",
        pattern=r"node" + _BARE,
        hint="use 'node script.js' or 'node -e \"...\"'",
    ),
)


def find_blocking_command(
    command: str, patterns: tuple[BlockingPattern, ...] = BLOCKING_PATTERNS
) -> BlockingPattern | None:
    """Return the first pattern matching declared command text, if any."""
    for candidate in patterns:
        if candidate.matches_command(command):
            return candidate
    return None


def find_blocking_process(
    cmdline: str, patterns: tuple[BlockingPattern, ...] = BLOCKING_PATTERNS
) -> BlockingPattern | None:
    """Return the first pattern matching a live process command line, if any."""
    for candidate in patterns:
        if candidate.matches_process(cmdline):
            return candidate
    return None
