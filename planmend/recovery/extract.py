"""
Task extraction from free-form plan text.

This is the only place that knows the textual task format; reconciliation
works on the structured list it returns, so a stricter plan contract can
replace this heuristic later without touching anything else.

Recognized task lines (after stripping bullets, numbering and checkboxes):

    T1: Create models | File: src/models.py
    Task 02: Wire up the router
    - [x] T003: Add tests | File: tests/test_api.py

Lines starting with ``## `` set the phase for the tasks that follow.
"""

from __future__ import annotations

import re

from ..store import PlanTask

REBUILT_OUTPUT_MARKER = "<!-- planmend:rebuilt-output -->"

_FENCE_RE = re.compile(r"^[ \t]*```[ \t]*tasks[^\n]*\n(.*?)^[ \t]*```", re.IGNORECASE | re.DOTALL | re.MULTILINE)
_PREFIX_RE = re.compile(
    r"^\s*(?:(?:[-*+]|\d+[.)])\s+)?(?:\[(?P<mark>[ xX>!-])\]\s*)?"
)
_TASK_RE = re.compile(r"^(?:Task\s*|T)(?P<num>\d+)\s*:\s*(?P<body>.*)$", re.IGNORECASE)
_FILE_SPLIT_RE = re.compile(r"\s*\|\s*File\s*:\s*", re.IGNORECASE)
_DIGITS_RE = re.compile(r"(\d+)")

# Section headings of the rebuilt output; they are not plan phases.
_REBUILT_SECTIONS = frozenset({"Plan Summary", "Task Status", "Files Found", "Missing Files"})

_MARK_STATUS = {
    "x": "completed",
    "X": "completed",
    ">": "in_progress",
    "!": "failed",
}


def normalize_task_id(value: str) -> str:
    """Normalize ``T7``, ``task 07`` or ``T007`` to ``T007``."""
    match = _DIGITS_RE.search(value or "")
    if not match:
        return (value or "").strip()
    return f"T{int(match.group(1)):03d}"


def strip_generated_marker(text: str) -> str:
    """Drop the trailing rebuilt-output sentinel, if present."""
    stripped = text.rstrip()
    if stripped.endswith(REBUILT_OUTPUT_MARKER):
        return stripped[: -len(REBUILT_OUTPUT_MARKER)].rstrip() + "\n"
    return text


def _scan_region(text: str) -> str:
    fenced = _FENCE_RE.search(text)
    if fenced:
        return fenced.group(1)
    return text


def parse_task_line(line: str, phase: str | None = None) -> PlanTask | None:
    prefix = _PREFIX_RE.match(line)
    mark = prefix.group("mark") if prefix else None
    rest = line[prefix.end():] if prefix else line.strip()
    match = _TASK_RE.match(rest.strip())
    if not match:
        return None

    parts = _FILE_SPLIT_RE.split(match.group("body"), maxsplit=1)
    description = parts[0].strip()
    file_path = None
    if len(parts) > 1:
        file_path = parts[1].strip().strip("`").strip() or None

    return PlanTask(
        id=normalize_task_id(match.group("num")),
        description=description,
        file_path=file_path,
        phase=phase,
        status=_MARK_STATUS.get(mark or "", "pending"),
    )


def extract_tasks(text: str | None) -> list[PlanTask]:
    """Scan plan text for task lines, in input order.

    An empty list means no structured plan could be recovered.
    """
    if not text:
        return []

    tasks: list[PlanTask] = []
    phase: str | None = None
    for raw_line in _scan_region(text).splitlines():
        line = raw_line.strip()
        if not line:
            continue
        if line.startswith("## "):
            heading = line[3:].strip()
            phase = heading if heading and heading not in _REBUILT_SECTIONS else None
            continue
        task = parse_task_line(line, phase=phase)
        if task is not None:
            tasks.append(task)
    return tasks
