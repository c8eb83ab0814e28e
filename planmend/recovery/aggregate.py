"""
Project-wide recovery report.

Every feature is reconciled (persisting drift repairs), then classified
into a list of issues. Features are processed concurrently with a bounded
semaphore; the blocking filesystem work runs in worker threads.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..store import FeatureRecord, FeatureStore
from .dependencies import extract_dependencies_from_plan, read_backup_dependencies, restore_candidates
from .reconcile import DEFAULT_WORKTREES_DIR, REVIEW_OR_DONE_STATUSES, reconcile_and_persist

logger = logging.getLogger(__name__)

ISSUE_EXECUTION_ERROR = "Execution error"
ISSUE_PLAN_INCOMPLETE = "Plan incomplete"
ISSUE_MISSING_FILES = "Missing expected files"
ISSUE_OUTPUT_MISSING = "Agent output missing"
ISSUE_MISSING_DEPENDENCIES = "Missing dependencies"
ISSUE_STATUS_MISMATCH = "Status out of sync with plan"

DEFAULT_CANDIDATE_PREVIEW = 5
DEFAULT_CONCURRENCY = 8


@dataclass
class RecoveryItem:
    feature_id: str
    title: str
    status: str
    updated_at: str | None
    error: str | None
    plan: dict[str, Any] | None
    missing_files: list[str]
    dependency_restore_count: int
    dependency_restore_candidates: list[str]
    has_agent_output: bool
    issues: list[str]
    can_resume: bool
    can_rebuild: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "featureId": self.feature_id,
            "title": self.title,
            "status": self.status,
            "updatedAt": self.updated_at,
            "error": self.error,
            "plan": self.plan,
            "missingFiles": list(self.missing_files),
            "dependencyRestoreCount": self.dependency_restore_count,
            "dependencyRestoreCandidates": list(self.dependency_restore_candidates),
            "hasAgentOutput": self.has_agent_output,
            "issues": list(self.issues),
            "canResume": self.can_resume,
            "canRebuild": self.can_rebuild,
        }


@dataclass
class RecoverySummary:
    total: int = 0
    total_items: int = 0
    incomplete_plans: int = 0
    missing_files: int = 0
    missing_outputs: int = 0
    missing_dependencies: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "totalItems": self.total_items,
            "incompletePlans": self.incomplete_plans,
            "missingFiles": self.missing_files,
            "missingOutputs": self.missing_outputs,
            "missingDependencies": self.missing_dependencies,
        }


@dataclass
class RecoveryReport:
    summary: RecoverySummary = field(default_factory=RecoverySummary)
    items: list[RecoveryItem] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": self.summary.to_dict(),
            "items": [item.to_dict() for item in self.items],
        }


def inspect_feature(
    project_path: Path,
    feature: FeatureRecord,
    store: FeatureStore,
    all_ids: set[str],
    worktrees_dir: str = DEFAULT_WORKTREES_DIR,
    candidate_preview: int = DEFAULT_CANDIDATE_PREVIEW,
) -> RecoveryItem:
    """Reconcile one feature (persisting drift repairs) and classify its issues."""
    updated, result, _ = reconcile_and_persist(project_path, feature, store, worktrees_dir)

    plan_spec = updated.plan_spec
    tasks_total = (plan_spec.tasks_total if plan_spec else None) or (result.tasks_total if result else 0)
    tasks_completed = (plan_spec.tasks_completed if plan_spec else None) or (
        result.tasks_completed if result else 0
    )
    missing_files = list(result.missing_files) if result else []
    has_plan = tasks_total > 0
    incomplete_plan = has_plan and tasks_completed < tasks_total
    has_output = store.has_agent_output(project_path, feature.id)

    issues: list[str] = []
    if (updated.error or "").strip() or updated.status in ("failed", "error"):
        issues.append(ISSUE_EXECUTION_ERROR)
    if incomplete_plan:
        issues.append(ISSUE_PLAN_INCOMPLETE)
    if missing_files:
        issues.append(ISSUE_MISSING_FILES)
    if not has_output:
        issues.append(ISSUE_OUTPUT_MISSING)

    restore = restore_candidates(
        updated,
        all_ids,
        read_backup_dependencies(store.feature_json_path(project_path, feature.id), store.max_backups),
        extract_dependencies_from_plan(plan_spec.content if plan_spec else None),
    )
    if restore.missing:
        issues.append(ISSUE_MISSING_DEPENDENCIES)

    plan_status = plan_spec.status if plan_spec else None
    if plan_status == "approved" and incomplete_plan and updated.status in REVIEW_OR_DONE_STATUSES:
        issues.append(ISSUE_STATUS_MISMATCH)

    plan = None
    if has_plan:
        plan = {
            "tasksCompleted": tasks_completed,
            "tasksTotal": tasks_total,
            "currentTaskId": plan_spec.current_task_id if plan_spec else None,
            "status": plan_status,
        }

    return RecoveryItem(
        feature_id=updated.id,
        title=updated.title,
        status=updated.status,
        updated_at=updated.updated_at,
        error=updated.error,
        plan=plan,
        missing_files=missing_files,
        dependency_restore_count=len(restore.missing),
        dependency_restore_candidates=restore.missing[:candidate_preview],
        has_agent_output=has_output,
        issues=issues,
        can_resume=incomplete_plan,
        can_rebuild=not has_output or bool(missing_files),
    )


async def aggregate_recovery(
    project_path: Path,
    store: FeatureStore,
    include_all: bool = False,
    concurrency: int = DEFAULT_CONCURRENCY,
    worktrees_dir: str = DEFAULT_WORKTREES_DIR,
    candidate_preview: int = DEFAULT_CANDIDATE_PREVIEW,
) -> RecoveryReport:
    features = await asyncio.to_thread(store.list_features, project_path)
    all_ids = {feature.id for feature in features}
    semaphore = asyncio.Semaphore(max(concurrency, 1))

    async def inspect_one(feature: FeatureRecord) -> RecoveryItem:
        async with semaphore:
            return await asyncio.to_thread(
                inspect_feature,
                project_path,
                feature,
                store,
                all_ids,
                worktrees_dir,
                candidate_preview,
            )

    inspected = await asyncio.gather(*(inspect_one(feature) for feature in features))

    report = RecoveryReport()
    summary = report.summary
    for item in inspected:
        if not item.issues and not include_all:
            continue
        if item.issues:
            summary.total += 1
        summary.missing_files += len(item.missing_files)
        if ISSUE_PLAN_INCOMPLETE in item.issues:
            summary.incomplete_plans += 1
        if not item.has_agent_output:
            summary.missing_outputs += 1
        summary.missing_dependencies += item.dependency_restore_count
        report.items.append(item)
    summary.total_items = len(inspected)

    logger.info(
        "Recovery report for %s: %d features with issues out of %d",
        project_path,
        summary.total,
        len(features),
    )
    return report
