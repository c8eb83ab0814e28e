"""
Rebuilt execution artifact for features whose agent output was lost.

The artifact is a best-effort summary of what the filesystem says happened,
not a reconstruction of the agent transcript.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader

from ..store import FeatureRecord, FeatureStore, PlanTask, timestamp_to_iso, utc_now_iso
from .extract import REBUILT_OUTPUT_MARKER
from .reconcile import DEFAULT_WORKTREES_DIR, candidate_paths, probe_file

logger = logging.getLogger(__name__)

_STATUS_MARKS = {
    "completed": "x",
    "in_progress": ">",
    "failed": "!",
}


def _template_env() -> Environment:
    template_dir = Path(__file__).resolve().parent / "templates"
    return Environment(
        loader=FileSystemLoader(str(template_dir)),
        autoescape=False,
        trim_blocks=True,
        lstrip_blocks=True,
    )


def format_bytes(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / (1024 * 1024):.1f} MB"


def _task_rows(tasks: list[PlanTask]) -> list[dict[str, Any]]:
    return [
        {
            "id": task.id,
            "description": task.description,
            "mark": _STATUS_MARKS.get(task.status, " "),
            "file_suffix": f" | File: {task.file_path}" if task.file_path else "",
        }
        for task in tasks
    ]


def _found_files(
    project_path: Path,
    feature: FeatureRecord,
    tasks: list[PlanTask],
    worktrees_dir: str,
) -> list[dict[str, str]]:
    rows: list[dict[str, str]] = []
    seen: set[str] = set()
    for task in tasks:
        if not task.file_path or task.file_path in seen:
            continue
        seen.add(task.file_path)
        found = probe_file(candidate_paths(project_path, feature, task.file_path, worktrees_dir))
        if found is None:
            continue
        try:
            stat = found.stat()
        except OSError as exc:
            logger.debug("Could not stat %s: %s", found, exc)
            continue
        rows.append(
            {
                "path": task.file_path,
                "size": format_bytes(stat.st_size),
                "modified": timestamp_to_iso(stat.st_mtime),
            }
        )
    return rows


def build_rebuilt_output(
    project_path: Path,
    feature: FeatureRecord,
    tasks: list[PlanTask] | None,
    missing_files: list[str] | None,
    now: str | None = None,
    worktrees_dir: str = DEFAULT_WORKTREES_DIR,
) -> str:
    tasks = list(tasks or [])
    plan = feature.plan_spec
    template = _template_env().get_template("rebuilt_output.md.j2")
    text = template.render(
        title=feature.title or feature.id,
        feature_id=feature.id,
        rebuilt_at=now or utc_now_iso(),
        plan_status=(plan.status if plan and plan.status else "unknown"),
        tasks_completed=sum(1 for task in tasks if task.status == "completed"),
        tasks_total=len(tasks),
        tasks=_task_rows(tasks),
        files_found=_found_files(project_path, feature, tasks, worktrees_dir),
        missing_files=list(missing_files or []),
        marker=REBUILT_OUTPUT_MARKER,
    )
    return text.rstrip() + "\n"


def save_rebuilt_output(
    project_path: Path,
    feature: FeatureRecord,
    store: FeatureStore,
    tasks: list[PlanTask] | None,
    missing_files: list[str] | None,
    worktrees_dir: str = DEFAULT_WORKTREES_DIR,
) -> str:
    content = build_rebuilt_output(
        project_path, feature, tasks, missing_files, worktrees_dir=worktrees_dir
    )
    path = store.save_agent_output(project_path, feature.id, content)
    logger.info("Rebuilt agent output for %s at %s", feature.id, path)
    return content
