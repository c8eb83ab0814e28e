from __future__ import annotations

import json

from click.testing import CliRunner

from conftest import make_feature, write_file

from planmend.cli import main
from planmend.config import CONFIG_FILENAME
from planmend.history import EventHistoryStore
from planmend.store import FeatureRecord, FeatureStore, PlanTask


def _invoke(project, *args, **kwargs):
    return CliRunner().invoke(main, ["--project", str(project), *args], **kwargs)


def test_cli_help_lists_recovery_commands():
    result = CliRunner().invoke(main, ["--help"])
    assert result.exit_code == 0
    for command in ("report", "reconcile", "rebuild", "resume", "restore-deps", "timeline", "events", "serve"):
        assert command in result.output


def test_init_writes_config(project):
    result = _invoke(project, "init")
    assert result.exit_code == 0
    assert (project / CONFIG_FILENAME).exists()
    assert (project / ".planmend").is_dir()

    again = _invoke(project, "init")
    assert "already exists" in again.output


def test_report_on_empty_project(project):
    result = _invoke(project, "report")
    assert result.exit_code == 0
    assert "No features need recovery." in result.output


def test_report_json(project):
    FeatureStore().create_feature(project, make_feature("F1", tasks=[PlanTask(id="T001", description="a", file_path="a.py")]))

    result = _invoke(project, "report", "--json")

    assert result.exit_code == 0
    data = json.loads(result.output)
    assert data["items"][0]["featureId"] == "F1"
    assert data["items"][0]["missingFiles"] == ["a.py"]


def test_reconcile_unknown_feature_fails(project):
    result = _invoke(project, "reconcile", "ghost")
    assert result.exit_code != 0
    assert "ghost" in result.output


def test_reconcile_reports_progress(project):
    write_file(project, "a.py")
    FeatureStore().create_feature(
        project,
        make_feature(
            "F1",
            tasks=[
                PlanTask(id="T001", description="a", file_path="a.py"),
                PlanTask(id="T002", description="b", file_path="b.py"),
            ],
        ),
    )

    result = _invoke(project, "reconcile", "F1")

    assert result.exit_code == 0
    assert "F1: 1/2 tasks completed" in result.output
    assert "Current task: T002" in result.output
    assert "Status reset to backlog" in result.output


def test_resume_without_plan_fails(project):
    FeatureStore().create_feature(project, FeatureRecord(id="F2"))
    result = _invoke(project, "resume", "F2")
    assert result.exit_code != 0
    assert "Feature has no plan to reconcile" in result.output


def test_restore_deps_dry_run(project):
    store = FeatureStore()
    store.create_feature(project, FeatureRecord(id="A"))
    store.create_feature(project, FeatureRecord(id="B", dependencies=["A"]))
    store.save_feature(project, FeatureRecord(id="B"))

    result = _invoke(project, "restore-deps", "B", "--dry-run")

    assert result.exit_code == 0
    assert "B: would restore A" in result.output
    assert store.get_feature(project, "B").dependencies is None


def test_events_list_and_clear(project):
    EventHistoryStore().store_event(project, "feature_error", feature_id="F1")

    listed = _invoke(project, "events", "list")
    assert listed.exit_code == 0
    assert "feature_error [F1]" in listed.output

    cleared = _invoke(project, "events", "clear", "--yes")
    assert cleared.exit_code == 0
    assert "Cleared 1 events." in cleared.output
    assert "No events found." in _invoke(project, "events", "list").output


def test_invalid_feature_id_is_a_usage_error(project):
    for command in ("reconcile", "rebuild", "resume", "timeline"):
        result = _invoke(project, command, "../x")
        assert result.exit_code == 1
        assert "Invalid feature id" in result.output
