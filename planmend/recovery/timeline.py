"""
Feature execution timeline.

Entries come from record timestamps, task timestamps and, optionally, file
activity recorded as tool invocations in the agent output::

    Tool: Write
    Input: {"file_path": "src/app.py", "content": "..."}
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ..store import FeatureRecord, PlanTask, timestamp_to_iso
from .reconcile import DEFAULT_WORKTREES_DIR, candidate_paths, probe_file

logger = logging.getLogger(__name__)

_TOOL_RE = re.compile(r"Tool:\s*(\S+)")
_INPUT_PREFIX_RE = re.compile(r"^Input:\s*")
_PATH_KEYS = ("file_path", "path", "notebook_path")

_TOOL_LABELS = {
    "Write": "File created/updated",
    "Edit": "File updated",
    "Delete": "File deleted",
}


@dataclass
class TimelineEntry:
    id: str
    type: str
    title: str
    timestamp: str
    detail: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "title": self.title,
            "timestamp": self.timestamp,
        }
        if self.detail is not None:
            result["detail"] = self.detail
        return result


@dataclass
class FileActivity:
    tool_name: str
    file_path: str


def _depth_change(line: str) -> tuple[int, int]:
    """Brace and bracket balance of ``line``, ignoring JSON string contents."""
    braces = 0
    brackets = 0
    in_string = False
    escaped = False
    for char in line:
        if escaped:
            escaped = False
            continue
        if char == "\\":
            escaped = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char == "{":
            braces += 1
        elif char == "}":
            braces -= 1
        elif char == "[":
            brackets += 1
        elif char == "]":
            brackets -= 1
    return braces, brackets


def _activity_from_json(tool_name: str, raw: str) -> FileActivity | None:
    raw = raw.strip()
    if not raw:
        return None
    try:
        parsed = json.loads(raw)
    except ValueError:
        logger.debug("Ignoring malformed tool input for %s", tool_name)
        return None
    if not isinstance(parsed, dict):
        return None
    for key in _PATH_KEYS:
        value = parsed.get(key)
        if isinstance(value, str) and value:
            return FileActivity(tool_name=tool_name, file_path=value)
    return None


def extract_file_activities(output: str | None) -> list[FileActivity]:
    if not output:
        return []

    activities: list[FileActivity] = []
    tool: str | None = None
    buffer: str | None = None
    brace_depth = 0
    bracket_depth = 0

    def flush() -> None:
        nonlocal buffer
        if tool is not None and buffer is not None:
            activity = _activity_from_json(tool, buffer)
            if activity is not None:
                activities.append(activity)
        buffer = None

    for line in output.split("\n"):
        stripped = line.strip()

        tool_match = _TOOL_RE.search(stripped)
        if tool_match:
            tool = tool_match.group(1)
            buffer = None
            brace_depth = bracket_depth = 0
            continue

        if tool is None:
            continue

        if stripped.startswith("Input:"):
            remainder = _INPUT_PREFIX_RE.sub("", stripped)
            buffer = remainder
            brace_depth, bracket_depth = _depth_change(remainder)
            if remainder and brace_depth <= 0 and bracket_depth <= 0:
                flush()
            continue

        if buffer is not None:
            buffer += f"\n{line}"
            braces, brackets = _depth_change(stripped)
            brace_depth += braces
            bracket_depth += brackets
            if brace_depth <= 0 and bracket_depth <= 0:
                flush()

    return activities


def file_timeline_entries(
    project_path: Path,
    feature: FeatureRecord,
    output: str | None,
    worktrees_dir: str = DEFAULT_WORKTREES_DIR,
) -> list[TimelineEntry]:
    """One entry per touched path that still exists, at its latest mtime."""
    latest: dict[str, tuple[str, float]] = {}
    for activity in extract_file_activities(output):
        found = probe_file(candidate_paths(project_path, feature, activity.file_path, worktrees_dir))
        if found is None:
            continue
        try:
            mtime = found.stat().st_mtime
        except OSError:
            continue
        existing = latest.get(activity.file_path)
        if existing is None or mtime > existing[1]:
            latest[activity.file_path] = (activity.tool_name, mtime)

    entries = []
    for file_path, (tool_name, mtime) in latest.items():
        stamp = timestamp_to_iso(mtime)
        entries.append(
            TimelineEntry(
                id=f"file-{file_path}-{stamp}",
                type="file_changed",
                title=_TOOL_LABELS.get(tool_name, "File activity"),
                detail=file_path,
                timestamp=stamp,
            )
        )
    return entries


def _sort_key(entry: TimelineEntry) -> datetime:
    try:
        moment = datetime.fromisoformat(entry.timestamp.replace("Z", "+00:00"))
    except ValueError:
        return datetime.min.replace(tzinfo=timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def sort_timeline(entries: list[TimelineEntry]) -> list[TimelineEntry]:
    return sorted(entries, key=_sort_key)


def build_timeline(feature: FeatureRecord, tasks: list[PlanTask] | None = None) -> list[TimelineEntry]:
    entries: list[TimelineEntry] = []
    plan = feature.plan_spec

    if feature.started_at:
        entries.append(
            TimelineEntry(
                id=f"feature-started-{feature.started_at}",
                type="feature_started",
                title="Feature started",
                timestamp=feature.started_at,
            )
        )
    if plan is not None and plan.generated_at:
        entries.append(
            TimelineEntry(
                id=f"plan-generated-{plan.generated_at}",
                type="plan_generated",
                title="Execution plan generated",
                timestamp=plan.generated_at,
            )
        )
    if plan is not None and plan.approved_at:
        entries.append(
            TimelineEntry(
                id=f"plan-approved-{plan.approved_at}",
                type="plan_approved",
                title="Execution plan approved",
                timestamp=plan.approved_at,
            )
        )

    for task in tasks or []:
        if task.started_at:
            entries.append(
                TimelineEntry(
                    id=f"task-started-{task.id}-{task.started_at}",
                    type="task_started",
                    title=f"{task.id} started",
                    detail=task.description,
                    timestamp=task.started_at,
                )
            )
        if task.completed_at:
            detail = f"{task.description} ({task.file_path})" if task.file_path else task.description
            entries.append(
                TimelineEntry(
                    id=f"task-completed-{task.id}-{task.completed_at}",
                    type="task_completed",
                    title=f"{task.id} completed",
                    detail=detail,
                    timestamp=task.completed_at,
                )
            )

    return sort_timeline(entries)
