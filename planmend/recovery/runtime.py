"""
Recovery runtime: the operations exposed over HTTP and the CLI.

Each operation loads the feature, reconciles it against the filesystem,
persists drift repairs and then does its own work. Transports only map
arguments in and results (or ``RecoveryError`` subclasses) out.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from ..config import RecoveryConfig
from ..errors import NoOpError
from ..events import EventEmitter
from ..history import EventHistoryStore
from ..store import FeatureRecord, FeatureStore, utc_now_iso
from .aggregate import RecoveryReport, aggregate_recovery
from .dependencies import apply_restore, extract_dependencies_from_plan, read_backup_dependencies, restore_candidates
from .reconcile import reconcile_and_persist
from .render import save_rebuilt_output
from .timeline import TimelineEntry, build_timeline, file_timeline_entries, sort_timeline

logger = logging.getLogger(__name__)

RESUME_REQUESTED_EVENT = "feature_resume_requested"
DEPENDENCIES_RESTORED_EVENT = "feature_dependencies_restored"


class RecoveryRuntime:
    def __init__(
        self,
        store: FeatureStore | None = None,
        history: EventHistoryStore | None = None,
        emitter: EventEmitter | None = None,
        config: RecoveryConfig | None = None,
    ):
        self.config = config or RecoveryConfig()
        self.store = store or FeatureStore(max_backups=self.config.max_backups)
        self.history = history
        self.emitter = emitter

    def _reconcile(self, project_path: Path, feature: FeatureRecord):
        return reconcile_and_persist(project_path, feature, self.store, self.config.worktrees_dir)

    def _save_output(self, project_path: Path, feature: FeatureRecord, tasks, missing_files) -> str:
        return save_rebuilt_output(
            project_path,
            feature,
            self.store,
            tasks,
            missing_files,
            worktrees_dir=self.config.worktrees_dir,
        )

    def list_features(self, project_path: Path) -> list[FeatureRecord]:
        """All features, each reconciled and persisted when it drifted."""
        features = []
        for feature in self.store.list_features(project_path):
            updated, _, _ = self._reconcile(project_path, feature)
            features.append(updated)
        return features

    def get_feature(self, project_path: Path, feature_id: str) -> FeatureRecord:
        return self.store.require_feature(project_path, feature_id)

    def reconcile_plan(
        self,
        project_path: Path,
        feature_id: str,
        rebuild_output: bool = True,
    ) -> dict[str, Any]:
        feature = self.store.require_feature(project_path, feature_id)
        updated, result, status_adjusted = self._reconcile(project_path, feature)

        if result is None:
            if rebuild_output:
                plan_tasks = feature.plan_spec.tasks if feature.plan_spec else None
                self._save_output(project_path, feature, plan_tasks, [])
            return {"feature": feature.to_dict(), "reconciled": None}

        if rebuild_output:
            self._save_output(project_path, updated, result.tasks, result.missing_files)

        reconciled = result.to_dict()
        reconciled["statusAdjusted"] = status_adjusted
        return {"feature": updated.to_dict(), "reconciled": reconciled}

    def rebuild_output(self, project_path: Path, feature_id: str) -> dict[str, Any]:
        feature = self.store.require_feature(project_path, feature_id)
        updated, result, _ = self._reconcile(project_path, feature)
        missing_files = list(result.missing_files) if result else []
        plan_tasks = updated.plan_spec.tasks if updated.plan_spec else None
        content = self._save_output(project_path, updated, plan_tasks, missing_files)
        return {"content": content, "missingFiles": missing_files}

    def resume_pending(self, project_path: Path, feature_id: str) -> dict[str, Any]:
        """Reconcile, rebuild the artifact and request a resume of pending tasks.

        Raises ``NoOpError`` when there is no plan or nothing left to do.
        """
        feature = self.store.require_feature(project_path, feature_id)
        updated, result, status_adjusted = self._reconcile(project_path, feature)
        if result is None:
            raise NoOpError("Feature has no plan to reconcile")

        reconciled = result.to_dict()
        reconciled["statusAdjusted"] = status_adjusted
        if result.tasks_total == 0 or result.tasks_completed >= result.tasks_total:
            raise NoOpError("No pending tasks to resume", payload={"reconciled": reconciled})

        self._save_output(project_path, updated, result.tasks, result.missing_files)

        pending = [task.id for task in result.tasks if task.status != "completed"]
        payload = {
            "projectPath": str(project_path),
            "featureId": feature_id,
            "currentTaskId": result.current_task_id,
            "pendingTaskIds": pending,
        }
        if self.emitter is not None:
            self.emitter.emit(RESUME_REQUESTED_EVENT, payload)
        if self.history is not None:
            self.history.store_event(
                project_path,
                RESUME_REQUESTED_EVENT,
                feature_id=feature_id,
                feature_name=updated.title or None,
                metadata={"pendingTaskIds": pending},
            )
        logger.info("Resume requested for %s: %d pending tasks", feature_id, len(pending))
        return {"reconciled": reconciled}

    def restore_dependencies(
        self,
        project_path: Path,
        feature_id: str | None = None,
        feature_ids: list[str] | None = None,
        dry_run: bool = False,
    ) -> dict[str, Any]:
        features = self.store.list_features(project_path)
        by_id = {feature.id: feature for feature in features}
        all_ids = set(by_id)

        if feature_id:
            targets = [feature_id]
        elif feature_ids:
            targets = list(dict.fromkeys(feature_ids))
        else:
            targets = [feature.id for feature in features]

        results: list[dict[str, Any]] = []
        restored_count = 0
        for target in targets:
            feature = by_id.get(target)
            if feature is None:
                results.append({"featureId": target, "restoredDependencies": [], "candidates": []})
                continue

            restore = restore_candidates(
                feature,
                all_ids,
                read_backup_dependencies(
                    self.store.feature_json_path(project_path, target), self.store.max_backups
                ),
                extract_dependencies_from_plan(feature.plan_spec.content if feature.plan_spec else None),
            )
            if not dry_run and restore.missing:
                updated = apply_restore(feature, restore.missing)
                updated.updated_at = utc_now_iso()
                self.store.save_feature(project_path, updated)
                restored_count += len(restore.missing)
                if self.emitter is not None:
                    self.emitter.emit(
                        DEPENDENCIES_RESTORED_EVENT,
                        {"projectPath": str(project_path), "featureId": target, "restored": restore.missing},
                    )
                logger.info("Restored %d dependencies for %s", len(restore.missing), target)

            results.append(
                {
                    "featureId": target,
                    "restoredDependencies": list(restore.missing),
                    "candidates": list(restore.candidates),
                }
            )

        return {
            "summary": {"processed": len(targets), "restoredCount": restored_count},
            "results": results,
        }

    async def recovery_report(self, project_path: Path, include_all: bool = False) -> RecoveryReport:
        return await aggregate_recovery(
            project_path,
            self.store,
            include_all=include_all,
            concurrency=self.config.concurrency,
            worktrees_dir=self.config.worktrees_dir,
            candidate_preview=self.config.candidate_preview,
        )

    def timeline(
        self,
        project_path: Path,
        feature_id: str,
        include_file_activity: bool = False,
    ) -> list[TimelineEntry]:
        feature = self.store.require_feature(project_path, feature_id)
        updated, _, _ = self._reconcile(project_path, feature)
        entries = build_timeline(updated, updated.plan_spec.tasks if updated.plan_spec else None)
        if include_file_activity:
            output = self.store.read_agent_output(project_path, feature_id)
            entries.extend(
                file_timeline_entries(project_path, updated, output, self.config.worktrees_dir)
            )
        return sort_timeline(entries)
