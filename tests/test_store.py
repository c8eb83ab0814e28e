from __future__ import annotations

import json

import pytest

from planmend.errors import FeatureNotFoundError
from planmend.store import FeatureRecord, FeatureStore, PlanSpec, PlanTask, validate_feature_id


def test_feature_round_trip_preserves_unknown_keys(project, store):
    path = store.feature_json_path(project, "F1")
    path.parent.mkdir(parents=True)
    path.write_text(
        json.dumps(
            {
                "id": "F1",
                "title": "Login",
                "status": "custom_status",
                "category": "auth",
                "planSpec": {"status": "approved", "tasks": [{"id": "T001", "description": "a"}], "mode": "full"},
            }
        ),
        encoding="utf-8",
    )

    feature = store.get_feature(project, "F1")
    assert feature.status == "custom_status"
    assert feature.extra == {"category": "auth"}
    assert feature.plan_spec.extra == {"mode": "full"}
    assert feature.plan_spec.tasks[0].status == "pending"

    data = feature.to_dict()
    assert data["category"] == "auth"
    assert data["planSpec"]["mode"] == "full"
    assert "dependencies" not in data


def test_save_rotates_numbered_backups(project, store):
    store.create_feature(project, FeatureRecord(id="F1", title="v0"))
    for version in range(1, 5):
        store.save_feature(project, FeatureRecord(id="F1", title=f"v{version}"))

    path = store.feature_json_path(project, "F1")
    titles = [
        json.loads(path.with_name(f"feature.json.bak{i}").read_text(encoding="utf-8"))["title"]
        for i in (1, 2, 3)
    ]
    assert titles == ["v3", "v2", "v1"]
    assert not path.with_name("feature.json.bak4").exists()
    assert store.get_feature(project, "F1").title == "v4"


def test_save_requires_existing_feature(project, store):
    with pytest.raises(FeatureNotFoundError):
        store.save_feature(project, FeatureRecord(id="ghost"))
    with pytest.raises(FeatureNotFoundError):
        store.require_feature(project, "ghost")


def test_create_refuses_duplicates(project, store):
    store.create_feature(project, FeatureRecord(id="F1"))
    with pytest.raises(ValueError):
        store.create_feature(project, FeatureRecord(id="F1"))


def test_list_features_skips_corrupt_records(project, store):
    store.create_feature(project, FeatureRecord(id="b"))
    store.create_feature(project, FeatureRecord(id="a"))
    broken = store.feature_json_path(project, "c")
    broken.parent.mkdir(parents=True)
    broken.write_text("{nope", encoding="utf-8")

    assert [f.id for f in store.list_features(project)] == ["a", "b"]


def test_invalid_feature_ids_are_rejected():
    for bad in ("", "../x", "a/b", ".hidden"):
        with pytest.raises(ValueError):
            validate_feature_id(bad)
    assert validate_feature_id("feature-1.2_x") == "feature-1.2_x"


def test_agent_output_read_write(project, store):
    assert store.read_agent_output(project, "F1") is None
    assert store.has_agent_output(project, "F1") is False
    store.save_agent_output(project, "F1", "hello")
    assert store.read_agent_output(project, "F1") == "hello"
    assert store.has_agent_output(project, "F1") is True


def test_zero_backups_disables_rotation(project):
    store = FeatureStore(max_backups=0)
    store.create_feature(project, FeatureRecord(id="F1"))
    store.save_feature(project, FeatureRecord(id="F1", title="new"))
    assert not store.feature_json_path(project, "F1").with_name("feature.json.bak1").exists()


def test_copy_is_deep():
    feature = FeatureRecord(
        id="F1",
        dependencies=["A"],
        plan_spec=PlanSpec(tasks=[PlanTask(id="T001", description="a")]),
    )
    clone = feature.copy()
    clone.dependencies.append("B")
    clone.plan_spec.tasks[0].status = "completed"
    assert feature.dependencies == ["A"]
    assert feature.plan_spec.tasks[0].status == "pending"
