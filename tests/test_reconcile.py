from __future__ import annotations

import os

from conftest import make_feature, write_file

from planmend.recovery.reconcile import (
    has_plan_changes,
    merge_reconciliation,
    reconcile_and_persist,
    reconcile_plan,
    sanitize_branch_name,
    should_downgrade_status,
    workspace_path,
)
from planmend.store import PlanSpec, PlanTask


def _f1_tasks() -> list[PlanTask]:
    return [
        PlanTask(id="T001", description="First", file_path="path1", status="completed"),
        PlanTask(id="T002", description="Second", file_path="path2", status="pending"),
    ]


def test_f1_scenario_counts_missing_and_downgrade(project):
    write_file(project, "path1")
    feature = make_feature("F1", status="verified", tasks=_f1_tasks())

    result = reconcile_plan(project, feature)

    assert result is not None
    assert result.tasks_completed == 1
    assert result.tasks_total == 2
    assert result.current_task_id == "T002"
    assert result.missing_files == ["path2"]
    assert should_downgrade_status(feature, result) is True

    updated, changed = merge_reconciliation(feature, result)
    assert changed is True
    assert updated.status == "backlog"
    assert feature.status == "verified"


def test_reconcile_is_idempotent_and_does_not_mutate_input(project):
    write_file(project, "path1")
    feature = make_feature("F1", tasks=_f1_tasks())
    before = feature.to_dict()

    first = reconcile_plan(project, feature)
    second = reconcile_plan(project, feature)

    assert first.to_dict() == second.to_dict()
    assert feature.to_dict() == before


def test_filesystem_evidence_overrides_recorded_status(project):
    write_file(project, "exists.py")
    tasks = [
        PlanTask(id="T001", description="a", file_path="exists.py", status="pending"),
        PlanTask(id="T002", description="b", file_path="exists.py", status="in_progress"),
        PlanTask(id="T003", description="c", file_path="gone.py", status="completed"),
        PlanTask(id="T004", description="d", file_path="gone.py", status="failed"),
        PlanTask(id="T005", description="e", status="completed"),
    ]
    result = reconcile_plan(project, make_feature(tasks=tasks))

    assert [t.status for t in result.tasks] == ["completed", "completed", "pending", "failed", "completed"]
    assert result.missing_files == ["gone.py", "gone.py"]
    assert result.current_task_id == "T003"


def test_completed_at_backfilled_from_mtime(project):
    path = write_file(project, "src/app.py")
    os.utime(path, (1_700_000_000, 1_700_000_000))
    tasks = [PlanTask(id="T001", description="a", file_path="src/app.py")]

    result = reconcile_plan(project, make_feature(tasks=tasks))

    assert result.tasks[0].completed_at == "2023-11-14T22:13:20.000Z"


def test_existing_completed_at_is_kept(project):
    write_file(project, "a.py")
    tasks = [PlanTask(id="T001", description="a", file_path="a.py", completed_at="2024-01-01T00:00:00.000Z")]
    result = reconcile_plan(project, make_feature(tasks=tasks))
    assert result.tasks[0].completed_at == "2024-01-01T00:00:00.000Z"


def test_in_progress_task_inherits_feature_start(project):
    tasks = [PlanTask(id="T001", description="a", status="in_progress")]
    feature = make_feature(tasks=tasks, started_at="2024-05-01T10:00:00.000Z")
    result = reconcile_plan(project, feature)
    assert result.tasks[0].started_at == "2024-05-01T10:00:00.000Z"


def test_workspace_copy_counts_as_evidence(project):
    feature = make_feature(
        tasks=[PlanTask(id="T001", description="a", file_path="lib/x.py")],
        branch_name="feature/add login",
    )
    write_file(workspace_path(project, feature), "lib/x.py")

    result = reconcile_plan(project, feature)

    assert result.tasks[0].status == "completed"
    assert result.missing_files == []


def test_workspace_path_falls_back_to_feature_id(project):
    feature = make_feature("F9")
    assert workspace_path(project, feature) == project / ".worktrees" / "feature-F9"
    assert sanitize_branch_name("  feature/add login!! ") == "feature-add-login"


def test_absolute_file_path_is_probed_directly(project, tmp_path):
    outside = write_file(tmp_path, "elsewhere/out.txt")
    tasks = [PlanTask(id="T001", description="a", file_path=str(outside))]
    result = reconcile_plan(project, make_feature(tasks=tasks))
    assert result.tasks[0].status == "completed"


def test_tasks_extracted_from_plan_content(project):
    write_file(project, "one.py")
    feature = make_feature(tasks=None, content="T1: One | File: one.py\nT2: Two | File: two.py")
    result = reconcile_plan(project, feature)
    assert [t.id for t in result.tasks] == ["T001", "T002"]
    assert result.tasks_completed == 1


def test_tasks_extracted_from_agent_output(project, store):
    feature = make_feature(tasks=None, content="no structured plan")
    store.create_feature(project, feature)
    store.save_agent_output(project, feature.id, "- [x] T001: done | File: done.py\n")

    result = reconcile_plan(project, feature, store)

    assert result.tasks[0].id == "T001"
    assert result.tasks[0].status == "pending"
    assert result.missing_files == ["done.py"]


def test_no_tasks_returns_none(project):
    assert reconcile_plan(project, make_feature(tasks=None, plan_status=None)) is None
    assert reconcile_plan(project, make_feature(tasks=[], content="nothing")) is None


def test_has_plan_changes_treats_missing_counts_as_zero(project):
    write_file(project, "path1")
    feature = make_feature(tasks=_f1_tasks())
    result = reconcile_plan(project, feature)
    assert has_plan_changes(feature.plan_spec, result) is True

    updated, _ = merge_reconciliation(feature, result)
    assert has_plan_changes(updated.plan_spec, result) is False
    assert has_plan_changes(None, result) is True


def test_no_downgrade_when_plan_not_approved(project):
    feature = make_feature(status="completed", tasks=_f1_tasks(), plan_status="generated")
    result = reconcile_plan(project, feature)
    assert should_downgrade_status(feature, result) is False


def test_merge_without_changes_returns_same_record(project):
    write_file(project, "path1")
    write_file(project, "path2")
    feature = make_feature(status="running", tasks=_f1_tasks())
    result = reconcile_plan(project, feature)
    updated, _ = merge_reconciliation(feature, result)

    again, changed = merge_reconciliation(updated, reconcile_plan(project, updated))
    assert changed is False
    assert again is updated


def test_reconcile_and_persist_writes_only_on_change(project, store):
    write_file(project, "path1")
    feature = store.create_feature(project, make_feature(tasks=_f1_tasks()))

    updated, result, adjusted = reconcile_and_persist(project, feature, store)
    assert adjusted is True
    assert store.get_feature(project, "F1").status == "backlog"
    backup = store.feature_json_path(project, "F1").with_name("feature.json.bak1")
    assert backup.exists()

    stored = store.get_feature(project, "F1")
    _, _, adjusted_again = reconcile_and_persist(project, stored, store)
    assert adjusted_again is False
    assert not backup.with_name("feature.json.bak2").exists()
    assert isinstance(updated.plan_spec, PlanSpec)
    assert result.tasks_total == 2
