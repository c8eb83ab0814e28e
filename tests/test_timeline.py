from __future__ import annotations

import os

from conftest import make_feature, write_file

from planmend.recovery.timeline import build_timeline, extract_file_activities, file_timeline_entries
from planmend.store import PlanSpec, PlanTask

AGENT_OUTPUT = """
Starting work.

Tool: Write
Input: {"file_path": "src/a.py", "content": "print('{')"}

Tool: Edit
Input: {
  "path": "src/b.py",
  "edits": [
    {"old": "x", "new": "y"}
  ]
}

Tool: Read
Input: {"file_path": "src/a.py"}

Tool: Delete
Input: {"file_path": "src/gone.py"}

Tool: Bash
Input: {"command": "ls"}

Tool: Write
Input: {not json}
"""


def test_extract_file_activities_handles_multiline_json():
    activities = extract_file_activities(AGENT_OUTPUT)
    assert [(a.tool_name, a.file_path) for a in activities] == [
        ("Write", "src/a.py"),
        ("Edit", "src/b.py"),
        ("Read", "src/a.py"),
        ("Delete", "src/gone.py"),
    ]


def test_extract_file_activities_empty():
    assert extract_file_activities(None) == []
    assert extract_file_activities("Input: {\"file_path\": \"x\"}") == []


def test_file_entries_skip_missing_files_and_label_tools(project):
    a = write_file(project, "src/a.py")
    b = write_file(project, "src/b.py")
    os.utime(a, (1_700_000_000, 1_700_000_000))
    os.utime(b, (1_700_000_100, 1_700_000_100))

    entries = file_timeline_entries(project, make_feature(), AGENT_OUTPUT)

    by_path = {entry.detail: entry for entry in entries}
    assert set(by_path) == {"src/a.py", "src/b.py"}
    assert by_path["src/a.py"].title == "File created/updated"
    assert by_path["src/b.py"].title == "File updated"
    assert by_path["src/a.py"].type == "file_changed"
    assert by_path["src/a.py"].timestamp == "2023-11-14T22:13:20.000Z"


def test_unknown_tool_label(project):
    write_file(project, "notes.ipynb")
    output = 'Tool: NotebookEdit\nInput: {"notebook_path": "notes.ipynb"}\n'
    entries = file_timeline_entries(project, make_feature(), output)
    assert entries[0].title == "File activity"


def test_build_timeline_orders_entries_ascending():
    feature = make_feature(
        started_at="2024-01-01T10:00:00.000Z",
        tasks=[
            PlanTask(
                id="T001",
                description="Models",
                file_path="models.py",
                started_at="2024-01-01T10:05:00.000Z",
                completed_at="2024-01-01T10:30:00.000Z",
            ),
            PlanTask(id="T002", description="Views", started_at="2024-01-01T10:31:00.000Z"),
        ],
    )
    feature.plan_spec.generated_at = "2024-01-01T10:01:00.000Z"
    feature.plan_spec.approved_at = "2024-01-01T10:02:00.000Z"

    entries = build_timeline(feature, feature.plan_spec.tasks)

    assert [e.type for e in entries] == [
        "feature_started",
        "plan_generated",
        "plan_approved",
        "task_started",
        "task_completed",
        "task_started",
    ]
    assert entries[4].title == "T001 completed"
    assert entries[4].detail == "Models (models.py)"
    assert entries[5].detail == "Views"


def test_build_timeline_without_data():
    feature = make_feature(tasks=None, plan_status=None)
    assert build_timeline(feature) == []
    feature.plan_spec = PlanSpec()
    assert build_timeline(feature, []) == []
