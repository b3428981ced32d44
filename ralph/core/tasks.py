"""Task files: a markdown document with a YAML-ish header and a checklist.

Example::

    ---
    task: Build a CLI todo app
    test_command: "pytest -q"
    next_task: 02-polish.md
    quality_check_passed: false
    ---

    ## Success Criteria
    1. [x] Add command works
    2. [ ] List command works
    - [ ] Tests pass

Only list items carrying a ``[ ]``/``[x]`` marker count as criteria; brackets
in prose or code samples are ignored. The header is parsed best-effort: it
may be absent, malformed, or not YAML at all.
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
from dataclasses import dataclass
from pathlib import Path

import yaml

from ralph.core.errors import TaskFileError
from ralph.core.models import CriteriaSnapshot

logger = logging.getLogger(__name__)

HEADER_DELIMITER = "---"
MAX_HEADER_LINES = 100
QC_UNCHECK_NOTE = " <!-- QC: unchecked by quality check -->"

_CRITERION_RE = re.compile(r"^(?P<lead>\s*(?:[-*]|\d+\.)\s+)\[(?P<mark>[xX ])\](?P<rest>.*)$")
_HEADER_LINE_RE = re.compile(r"^(?P<key>[A-Za-z_][\w-]*)\s*:\s*(?P<value>.*?)\s*$")
_TRUE_VALUES = {"true", "yes", "on", "1"}


@dataclass
class Criterion:
    """One checklist item."""

    line_number: int  # 0-based index into the document lines
    text: str
    done: bool


def _coerce_scalar(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        return value[1:-1]
    return value


class TaskFile:
    """Reads and mutates one task file on disk."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def __repr__(self) -> str:
        return f"TaskFile({str(self.path)!r})"

    def exists(self) -> bool:
        return self.path.is_file()

    def read(self) -> str:
        try:
            return self.path.read_text(encoding="utf-8")
        except OSError as e:
            raise TaskFileError(f"Cannot read task file {self.path}: {e}") from e

    def _write(self, content: str) -> None:
        """Atomic replace: readers never see a half-written task file."""
        fd, temp_path = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            os.replace(temp_path, self.path)
        except OSError as e:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise TaskFileError(f"Cannot write task file {self.path}: {e}") from e

    # --- Header ---

    @staticmethod
    def _header_bounds(lines: list[str]) -> tuple[int, int] | None:
        """Return (open, close) line indexes of the header, or None."""
        if not lines or lines[0].strip() != HEADER_DELIMITER:
            return None
        for i in range(1, min(len(lines), MAX_HEADER_LINES + 1)):
            if lines[i].strip() == HEADER_DELIMITER:
                return 0, i
        return None

    def header(self) -> dict[str, str]:
        """Best-effort key/value extraction over the bounded header region."""
        if not self.exists():
            return {}
        lines = self.read().splitlines()
        bounds = self._header_bounds(lines)
        if bounds is None:
            return {}
        region = lines[bounds[0] + 1 : bounds[1]]

        try:
            data = yaml.safe_load("\n".join(region))
        except yaml.YAMLError as e:
            logger.debug(f"Header of {self.path} is not valid YAML, falling back: {e}")
            data = None
        if isinstance(data, dict):
            result = {}
            for key, value in data.items():
                if isinstance(value, bool):
                    value = "true" if value else "false"
                result[str(key)] = "" if value is None else str(value)
            return result

        result = {}
        for line in region:
            match = _HEADER_LINE_RE.match(line)
            if match:
                result[match.group("key")] = _coerce_scalar(match.group("value"))
        return result

    @property
    def name(self) -> str:
        return self.header().get("task") or "Unknown"

    @property
    def test_command(self) -> str | None:
        return self.header().get("test_command") or None

    @property
    def next_task(self) -> str | None:
        return self.header().get("next_task") or None

    def qc_passed(self) -> bool:
        return self.header().get("quality_check_passed", "").strip().lower() in _TRUE_VALUES

    def mark_qc_passed(self) -> None:
        """Set ``quality_check_passed: true``, synthesizing a header if missing."""
        if self.qc_passed():
            return
        content = self.read()
        lines = content.splitlines(keepends=True)
        bounds = self._header_bounds([line.rstrip("\r\n") for line in lines])

        if bounds is None:
            self._write(f"{HEADER_DELIMITER}\nquality_check_passed: true\n{HEADER_DELIMITER}\n{content}")
            return

        for i in range(bounds[0] + 1, bounds[1]):
            match = _HEADER_LINE_RE.match(lines[i].rstrip("\r\n"))
            if match and match.group("key") == "quality_check_passed":
                lines[i] = "quality_check_passed: true\n"
                break
        else:
            lines.insert(bounds[0] + 1, "quality_check_passed: true\n")
        self._write("".join(lines))

    # --- Criteria ---

    def criteria(self) -> list[Criterion]:
        if not self.exists():
            return []
        result = []
        for i, line in enumerate(self.read().splitlines()):
            match = _CRITERION_RE.match(line)
            if match:
                result.append(
                    Criterion(
                        line_number=i,
                        text=match.group("rest").strip(),
                        done=match.group("mark") != " ",
                    )
                )
        return result

    def snapshot(self) -> CriteriaSnapshot:
        items = self.criteria()
        return CriteriaSnapshot(done=sum(1 for c in items if c.done), total=len(items))

    def is_complete(self) -> bool:
        """All checklist items checked. Says nothing about verification."""
        return all(c.done for c in self.criteria())

    def is_advanceable(self) -> bool:
        return self.is_complete() and self.qc_passed()

    def uncheck_criterion(self, n: int) -> Criterion | None:
        """Uncheck the Nth *checked* criterion (1-based) and annotate it.

        Returns the criterion that was unchecked, or None if there is no Nth
        checked item.
        """
        checked = [c for c in self.criteria() if c.done]
        if n < 1 or n > len(checked):
            return None
        target = checked[n - 1]

        lines = self.read().splitlines(keepends=True)
        raw = lines[target.line_number]
        ending = raw[len(raw.rstrip("\r\n")) :] or "\n"
        match = _CRITERION_RE.match(raw.rstrip("\r\n"))
        if match is None:
            return None
        rest = match.group("rest")
        if QC_UNCHECK_NOTE.strip() not in rest:
            rest += QC_UNCHECK_NOTE
        lines[target.line_number] = f"{match.group('lead')}[ ]{rest}{ending}"
        self._write("".join(lines))
        logger.info(f"Unchecked criterion {n} in {self.path.name}: {target.text}")
        return Criterion(line_number=target.line_number, text=target.text, done=False)

    def uncheck_last(self) -> Criterion | None:
        checked_count = sum(1 for c in self.criteria() if c.done)
        if checked_count == 0:
            return None
        return self.uncheck_criterion(checked_count)

    def summary(self, max_lines: int = 15) -> str:
        """Leading lines of the document, for confirmation screens."""
        if not self.exists():
            return ""
        return "\n".join(self.read().splitlines()[:max_lines])
