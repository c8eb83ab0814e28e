"""
File-based feature storage for Planmend.

Layout (per project):
- .planmend/features/<id>/feature.json        Feature record (camelCase JSON)
- .planmend/features/<id>/feature.json.bakN   Numbered backups, bak1 newest
- .planmend/features/<id>/agent-output.md     Captured execution artifact

Every write goes through a temp file and an atomic rename, so a crash never
leaves a half-written record or artifact behind.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import re
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .config import get_state_dir
from .errors import FeatureNotFoundError

logger = logging.getLogger(__name__)

FEATURES_DIRNAME = "features"
FEATURE_FILENAME = "feature.json"
AGENT_OUTPUT_FILENAME = "agent-output.md"
DEFAULT_MAX_BACKUPS = 3

TASK_STATUSES = ("pending", "in_progress", "completed", "failed")
FEATURE_STATUSES = (
    "backlog",
    "running",
    "waiting_approval",
    "verified",
    "completed",
    "failed",
    "error",
)

_SAFE_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def timestamp_to_iso(epoch_seconds: float) -> str:
    moment = datetime.fromtimestamp(epoch_seconds, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def atomic_write_bytes(path: Path, content: bytes) -> None:
    """Write to a sibling temp file, then rename it over ``path``."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(content)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def atomic_write_text(path: Path, content: str) -> None:
    atomic_write_bytes(path, content.encode("utf-8"))


def atomic_write_json(path: Path, data: Any) -> None:
    atomic_write_text(path, json.dumps(data, indent=2))


@dataclass
class PlanTask:
    """One step of a feature plan, optionally tied to a file."""

    id: str
    description: str
    file_path: str | None = None
    phase: str | None = None
    status: str = "pending"
    started_at: str | None = None
    completed_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "id": self.id,
            "description": self.description,
            "status": self.status,
        }
        if self.file_path is not None:
            result["filePath"] = self.file_path
        if self.phase is not None:
            result["phase"] = self.phase
        if self.started_at is not None:
            result["startedAt"] = self.started_at
        if self.completed_at is not None:
            result["completedAt"] = self.completed_at
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PlanTask":
        return cls(
            id=str(data.get("id", "")),
            description=str(data.get("description", "")),
            file_path=data.get("filePath") or None,
            phase=data.get("phase"),
            status=data.get("status") or "pending",
            started_at=data.get("startedAt"),
            completed_at=data.get("completedAt"),
        )


_PLAN_KEYS = {
    "content",
    "tasks",
    "tasksCompleted",
    "tasksTotal",
    "currentTaskId",
    "status",
    "generatedAt",
    "approvedAt",
}


@dataclass
class PlanSpec:
    """Plan attached to a feature."""

    content: str | None = None
    tasks: list[PlanTask] | None = None
    tasks_completed: int | None = None
    tasks_total: int | None = None
    current_task_id: str | None = None
    status: str | None = None
    generated_at: str | None = None
    approved_at: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = dict(self.extra)
        if self.content is not None:
            result["content"] = self.content
        if self.tasks is not None:
            result["tasks"] = [task.to_dict() for task in self.tasks]
        if self.tasks_completed is not None:
            result["tasksCompleted"] = self.tasks_completed
        if self.tasks_total is not None:
            result["tasksTotal"] = self.tasks_total
        if self.current_task_id is not None:
            result["currentTaskId"] = self.current_task_id
        if self.status is not None:
            result["status"] = self.status
        if self.generated_at is not None:
            result["generatedAt"] = self.generated_at
        if self.approved_at is not None:
            result["approvedAt"] = self.approved_at
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PlanSpec":
        raw_tasks = data.get("tasks")
        tasks = None
        if isinstance(raw_tasks, list):
            tasks = [PlanTask.from_dict(item) for item in raw_tasks if isinstance(item, dict)]
        return cls(
            content=data.get("content"),
            tasks=tasks,
            tasks_completed=data.get("tasksCompleted"),
            tasks_total=data.get("tasksTotal"),
            current_task_id=data.get("currentTaskId"),
            status=data.get("status"),
            generated_at=data.get("generatedAt"),
            approved_at=data.get("approvedAt"),
            extra={k: v for k, v in data.items() if k not in _PLAN_KEYS},
        )


_FEATURE_KEYS = {
    "id",
    "title",
    "description",
    "status",
    "dependencies",
    "planSpec",
    "startedAt",
    "updatedAt",
    "error",
    "branchName",
}


@dataclass
class FeatureRecord:
    """Stored feature (unit of trackable work)."""

    id: str
    title: str = ""
    description: str = ""
    status: str = "backlog"
    dependencies: list[str] | None = None
    plan_spec: PlanSpec | None = None
    started_at: str | None = None
    updated_at: str | None = None
    error: str | None = None
    branch_name: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = dict(self.extra)
        result["id"] = self.id
        result["title"] = self.title
        result["description"] = self.description
        result["status"] = self.status
        if self.dependencies is not None:
            result["dependencies"] = list(self.dependencies)
        if self.plan_spec is not None:
            result["planSpec"] = self.plan_spec.to_dict()
        if self.started_at is not None:
            result["startedAt"] = self.started_at
        if self.updated_at is not None:
            result["updatedAt"] = self.updated_at
        if self.error is not None:
            result["error"] = self.error
        if self.branch_name is not None:
            result["branchName"] = self.branch_name
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FeatureRecord":
        plan_data = data.get("planSpec")
        raw_deps = data.get("dependencies")
        dependencies = None
        if isinstance(raw_deps, list):
            dependencies = [str(dep) for dep in raw_deps]
        return cls(
            id=str(data["id"]),
            title=data.get("title") or "",
            description=data.get("description") or "",
            status=data.get("status") or "backlog",
            dependencies=dependencies,
            plan_spec=PlanSpec.from_dict(plan_data) if isinstance(plan_data, dict) else None,
            started_at=data.get("startedAt"),
            updated_at=data.get("updatedAt"),
            error=data.get("error"),
            branch_name=data.get("branchName"),
            extra={k: v for k, v in data.items() if k not in _FEATURE_KEYS},
        )

    def copy(self) -> "FeatureRecord":
        return copy.deepcopy(self)


def validate_feature_id(feature_id: str) -> str:
    if not feature_id or not _SAFE_ID_RE.match(feature_id):
        raise ValueError(f"Invalid feature id: {feature_id!r}")
    return feature_id


class FeatureStore:
    """Reads and writes feature records for any project path."""

    def __init__(self, max_backups: int = DEFAULT_MAX_BACKUPS):
        self.max_backups = max_backups

    def features_dir(self, project_path: Path) -> Path:
        return get_state_dir(Path(project_path)) / FEATURES_DIRNAME

    def feature_dir(self, project_path: Path, feature_id: str) -> Path:
        return self.features_dir(project_path) / validate_feature_id(feature_id)

    def feature_json_path(self, project_path: Path, feature_id: str) -> Path:
        return self.feature_dir(project_path, feature_id) / FEATURE_FILENAME

    def agent_output_path(self, project_path: Path, feature_id: str) -> Path:
        return self.feature_dir(project_path, feature_id) / AGENT_OUTPUT_FILENAME

    def list_features(self, project_path: Path) -> list[FeatureRecord]:
        """All readable features, ordered by directory name.

        Unreadable or corrupt records are logged and skipped.
        """
        root = self.features_dir(project_path)
        if not root.is_dir():
            return []
        features: list[FeatureRecord] = []
        for entry in sorted(root.iterdir(), key=lambda p: p.name):
            if not entry.is_dir() or not _SAFE_ID_RE.match(entry.name):
                continue
            record = self._read_record(entry / FEATURE_FILENAME)
            if record is not None:
                features.append(record)
        return features

    def get_feature(self, project_path: Path, feature_id: str) -> FeatureRecord | None:
        return self._read_record(self.feature_json_path(project_path, feature_id))

    def require_feature(self, project_path: Path, feature_id: str) -> FeatureRecord:
        record = self.get_feature(project_path, feature_id)
        if record is None:
            raise FeatureNotFoundError(feature_id)
        return record

    def create_feature(self, project_path: Path, record: FeatureRecord) -> FeatureRecord:
        path = self.feature_json_path(project_path, record.id)
        if path.exists():
            raise ValueError(f"Feature already exists: {record.id}")
        if record.updated_at is None:
            record.updated_at = utc_now_iso()
        atomic_write_json(path, record.to_dict())
        return record

    def save_feature(self, project_path: Path, record: FeatureRecord) -> FeatureRecord:
        """Persist a full record, rotating numbered backups of the previous one."""
        path = self.feature_json_path(project_path, record.id)
        if not path.exists():
            raise FeatureNotFoundError(record.id)
        self._rotate_backups(path)
        atomic_write_json(path, record.to_dict())
        return record

    def read_agent_output(self, project_path: Path, feature_id: str) -> str | None:
        path = self.agent_output_path(project_path, feature_id)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("Unreadable agent output for %s: %s", feature_id, exc)
            return None

    def has_agent_output(self, project_path: Path, feature_id: str) -> bool:
        return self.agent_output_path(project_path, feature_id).is_file()

    def save_agent_output(self, project_path: Path, feature_id: str, content: str) -> Path:
        path = self.agent_output_path(project_path, feature_id)
        atomic_write_text(path, content)
        return path

    def _rotate_backups(self, path: Path) -> None:
        if self.max_backups <= 0:
            return
        for i in range(self.max_backups, 1, -1):
            older = path.with_name(f"{path.name}.bak{i - 1}")
            if older.exists():
                os.replace(older, path.with_name(f"{path.name}.bak{i}"))
        atomic_write_bytes(path.with_name(f"{path.name}.bak1"), path.read_bytes())

    @staticmethod
    def _read_record(path: Path) -> FeatureRecord | None:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.warning("Skipping unreadable feature record %s: %s", path, exc)
            return None
        if not isinstance(data, dict) or "id" not in data:
            logger.warning("Skipping malformed feature record %s", path)
            return None
        return FeatureRecord.from_dict(data)
