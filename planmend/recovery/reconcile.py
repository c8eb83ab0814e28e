"""
Pure plan reconciliation: task status derived from filesystem evidence.

``reconcile_plan`` never mutates its input and never writes anything. It is
an idempotent function of the task list plus the files that exist, so it is
safe to run on every poll. Persisting the outcome is the caller's job
(see ``merge_reconciliation``).
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..store import FeatureRecord, FeatureStore, PlanSpec, PlanTask, timestamp_to_iso, utc_now_iso
from .extract import extract_tasks, strip_generated_marker

logger = logging.getLogger(__name__)

DEFAULT_WORKTREES_DIR = ".worktrees"
DOWNGRADE_TARGET_STATUS = "backlog"
REVIEW_OR_DONE_STATUSES = frozenset({"waiting_approval", "verified", "completed"})


@dataclass
class ReconciliationResult:
    tasks: list[PlanTask]
    tasks_completed: int
    tasks_total: int
    current_task_id: str | None = None
    missing_files: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tasks": [task.to_dict() for task in self.tasks],
            "tasksCompleted": self.tasks_completed,
            "tasksTotal": self.tasks_total,
            "currentTaskId": self.current_task_id,
            "missingFiles": list(self.missing_files),
        }


def sanitize_branch_name(value: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "-", value.strip())
    return cleaned.strip("-")


def workspace_path(
    project_path: Path,
    feature: FeatureRecord,
    worktrees_dir: str = DEFAULT_WORKTREES_DIR,
) -> Path:
    """Isolated workspace copy a feature may have been executed in."""
    name = sanitize_branch_name(feature.branch_name or "")
    if not name:
        name = sanitize_branch_name(f"feature-{feature.id}") or "feature"
    return Path(project_path) / worktrees_dir / name


def candidate_paths(
    project_path: Path,
    feature: FeatureRecord,
    file_path: str,
    worktrees_dir: str = DEFAULT_WORKTREES_DIR,
) -> list[Path]:
    raw = Path(file_path).expanduser()
    if raw.is_absolute():
        return [raw]
    return [
        Path(project_path) / raw,
        workspace_path(project_path, feature, worktrees_dir) / raw,
    ]


def probe_file(candidates: list[Path]) -> Path | None:
    for candidate in candidates:
        try:
            if candidate.is_file():
                return candidate
        except OSError:
            continue
    return None


def load_plan_tasks(
    project_path: Path,
    feature: FeatureRecord,
    store: FeatureStore | None = None,
) -> list[PlanTask]:
    """Structured tasks, else tasks parsed from plan text, else from the saved artifact."""
    plan = feature.plan_spec
    if plan is not None and plan.tasks:
        return [PlanTask(**vars(task)) for task in plan.tasks]

    if plan is not None and plan.content:
        extracted = extract_tasks(plan.content)
        if extracted:
            return extracted

    if store is not None:
        output = store.read_agent_output(project_path, feature.id)
        if output:
            return extract_tasks(strip_generated_marker(output))
    return []


def reconcile_plan(
    project_path: Path,
    feature: FeatureRecord,
    store: FeatureStore | None = None,
    worktrees_dir: str = DEFAULT_WORKTREES_DIR,
) -> ReconciliationResult | None:
    tasks = load_plan_tasks(project_path, feature, store)
    if not tasks:
        return None

    missing_files: list[str] = []
    for task in tasks:
        if task.status not in ("pending", "in_progress", "completed", "failed"):
            task.status = "pending"
        if task.status == "in_progress" and not task.started_at and feature.started_at:
            task.started_at = feature.started_at
        if not task.file_path:
            continue

        found = probe_file(candidate_paths(project_path, feature, task.file_path, worktrees_dir))
        if found is not None:
            task.status = "completed"
            if not task.completed_at:
                task.completed_at = timestamp_to_iso(found.stat().st_mtime)
        else:
            missing_files.append(task.file_path)
            if task.status != "failed":
                task.status = "pending"

    tasks_completed = sum(1 for task in tasks if task.status == "completed")
    next_pending = next((task for task in tasks if task.status != "completed"), None)

    logger.info(
        "Reconciled %s: %d/%d tasks completed, %d missing files",
        feature.id,
        tasks_completed,
        len(tasks),
        len(missing_files),
    )

    return ReconciliationResult(
        tasks=tasks,
        tasks_completed=tasks_completed,
        tasks_total=len(tasks),
        current_task_id=next_pending.id if next_pending else None,
        missing_files=missing_files,
    )


def has_plan_changes(plan_spec: PlanSpec | None, result: ReconciliationResult) -> bool:
    current_tasks = plan_spec.tasks if plan_spec and plan_spec.tasks else []
    if [t.to_dict() for t in current_tasks] != [t.to_dict() for t in result.tasks]:
        return True
    if ((plan_spec.tasks_completed if plan_spec else None) or 0) != result.tasks_completed:
        return True
    if ((plan_spec.tasks_total if plan_spec else None) or 0) != result.tasks_total:
        return True
    current_id = plan_spec.current_task_id if plan_spec else None
    return (current_id or None) != (result.current_task_id or None)


def should_downgrade_status(feature: FeatureRecord, result: ReconciliationResult) -> bool:
    """Approved plan with unfinished tasks cannot sit in a review/done status."""
    plan = feature.plan_spec
    return (
        plan is not None
        and plan.status == "approved"
        and result.tasks_completed < result.tasks_total
        and feature.status in REVIEW_OR_DONE_STATUSES
    )


def merge_reconciliation(
    feature: FeatureRecord,
    result: ReconciliationResult,
) -> tuple[FeatureRecord, bool]:
    """Apply a reconciliation result to a copy of ``feature``.

    Returns ``(record, changed)``. When nothing changed the original record
    is returned untouched.
    """
    needs_update = has_plan_changes(feature.plan_spec, result)
    downgrade = should_downgrade_status(feature, result)
    if not needs_update and not downgrade:
        return feature, False

    updated = feature.copy()
    plan = updated.plan_spec or PlanSpec()
    plan.tasks = [PlanTask(**vars(task)) for task in result.tasks]
    plan.tasks_completed = result.tasks_completed
    plan.tasks_total = result.tasks_total
    plan.current_task_id = result.current_task_id
    updated.plan_spec = plan
    if downgrade:
        updated.status = DOWNGRADE_TARGET_STATUS
    updated.updated_at = utc_now_iso()
    return updated, True


def reconcile_and_persist(
    project_path: Path,
    feature: FeatureRecord,
    store: FeatureStore,
    worktrees_dir: str = DEFAULT_WORKTREES_DIR,
) -> tuple[FeatureRecord, ReconciliationResult | None, bool]:
    """Reconcile, then write the merged record back only if it changed."""
    result = reconcile_plan(project_path, feature, store, worktrees_dir)
    if result is None:
        return feature, None, False
    status_adjusted = should_downgrade_status(feature, result)
    updated, changed = merge_reconciliation(feature, result)
    if changed:
        store.save_feature(project_path, updated)
        if status_adjusted:
            logger.info("Downgraded %s to %s: plan approved but incomplete", feature.id, updated.status)
    return updated, result, status_adjusted
