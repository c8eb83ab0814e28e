from __future__ import annotations

import os

from conftest import make_feature, write_file

from planmend.recovery.extract import REBUILT_OUTPUT_MARKER, extract_tasks, strip_generated_marker
from planmend.recovery.render import build_rebuilt_output, format_bytes, save_rebuilt_output
from planmend.store import FeatureRecord, PlanTask


def test_format_bytes_scales_units():
    assert format_bytes(512) == "512 B"
    assert format_bytes(2048) == "2.0 KB"
    assert format_bytes(1536) == "1.5 KB"
    assert format_bytes(3 * 1024 * 1024) == "3.0 MB"


def test_rebuilt_output_sections(project):
    path = write_file(project, "src/a.py", "a" * 2048)
    os.utime(path, (1_700_000_000, 1_700_000_000))
    tasks = [
        PlanTask(id="T001", description="Write a", file_path="src/a.py", status="completed"),
        PlanTask(id="T002", description="Write b", file_path="src/b.py", status="pending"),
        PlanTask(id="T003", description="Think", status="in_progress"),
    ]
    feature = make_feature("F1", tasks=tasks)

    text = build_rebuilt_output(project, feature, tasks, ["src/b.py"], now="2024-01-01T00:00:00.000Z")

    assert text.startswith("# Rebuilt Output\n")
    assert "Feature: Feature F1" in text
    assert "Feature ID: F1" in text
    assert "Rebuilt At: 2024-01-01T00:00:00.000Z" in text
    assert "- Plan Status: approved" in text
    assert "- Progress: 1/3" in text
    assert "- [x] T001: Write a | File: src/a.py\n" in text
    assert "- [ ] T002: Write b | File: src/b.py\n" in text
    assert "- [>] T003: Think\n" in text
    assert "- src/a.py (size: 2.0 KB, modified: 2023-11-14T22:13:20.000Z)" in text
    assert "## Missing Files\n- src/b.py\n" in text
    assert text.rstrip().endswith(REBUILT_OUTPUT_MARKER)


def test_rebuilt_output_degrades_for_empty_feature(project):
    feature = FeatureRecord(id="bare")
    text = build_rebuilt_output(project, feature, None, None)

    assert "Feature: bare" in text
    assert "- Plan Status: unknown" in text
    assert "- Progress: 0/0" in text
    assert "## Task Status\n- No tasks found\n" in text
    assert "## Files Found\n- No files found\n" in text
    assert "## Missing Files\n- None\n" in text


def test_rebuilt_output_parses_back_into_tasks(project):
    tasks = [
        PlanTask(id="T001", description="One", file_path="one.py", status="completed"),
        PlanTask(id="T002", description="Two", status="failed"),
    ]
    text = build_rebuilt_output(project, make_feature(tasks=tasks), tasks, [])
    parsed = extract_tasks(strip_generated_marker(text))
    assert [(t.id, t.status, t.file_path) for t in parsed] == [
        ("T001", "completed", "one.py"),
        ("T002", "failed", None),
    ]


def test_save_rebuilt_output_writes_agent_output(project, store):
    feature = store.create_feature(project, make_feature("F2", tasks=[]))
    content = save_rebuilt_output(project, feature, store, [], [])
    assert store.read_agent_output(project, "F2") == content


def test_reextracted_tasks_take_no_phase_from_sections(project):
    tasks = [PlanTask(id="T001", description="Write a", file_path="a.py", phase="Phase 1")]
    text = build_rebuilt_output(project, make_feature("F1", tasks=tasks), tasks, ["a.py"])

    reparsed = extract_tasks(strip_generated_marker(text))

    assert [(task.id, task.phase) for task in reparsed] == [("T001", None)]
