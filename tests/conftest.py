from __future__ import annotations

from pathlib import Path

import pytest

from planmend.store import FeatureRecord, FeatureStore, PlanSpec, PlanTask


@pytest.fixture
def project(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    return root


@pytest.fixture
def store() -> FeatureStore:
    return FeatureStore()


def write_file(root: Path, relative: str, content: str = "x") -> Path:
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


def make_feature(
    feature_id: str = "F1",
    status: str = "verified",
    tasks: list[PlanTask] | None = None,
    plan_status: str | None = "approved",
    content: str | None = None,
    **kwargs,
) -> FeatureRecord:
    plan = None
    if tasks is not None or content is not None or plan_status is not None:
        plan = PlanSpec(content=content, tasks=tasks, status=plan_status)
    return FeatureRecord(id=feature_id, title=f"Feature {feature_id}", status=status, plan_spec=plan, **kwargs)
