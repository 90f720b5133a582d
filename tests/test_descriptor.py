import json
import sys

import pytest

from appsupervisor.descriptor import AppDescriptor, load_descriptors, parse_descriptor
from appsupervisor.errors import ValidationError

ECOSYSTEM_ENTRY = {
    "name": "form-dashboard-api",
    "cwd": "./server",
    "script": "index.js",
    "instances": 1,
    "autorestart": True,
    "watch": False,
    "env": {"NODE_ENV": "production", "PORT": 5000},
}


def test_parses_ecosystem_entry(tmp_path):
    descriptor = parse_descriptor(ECOSYSTEM_ENTRY, base_dir=tmp_path)

    assert descriptor.name == "form-dashboard-api"
    assert descriptor.working_directory == (tmp_path / "server").resolve()
    assert descriptor.entry_point == "index.js"
    assert descriptor.instance_count == 1
    assert descriptor.auto_restart is True
    assert descriptor.watch_enabled is False
    assert descriptor.environment == {"NODE_ENV": "production", "PORT": "5000"}


def test_long_field_names_are_accepted(tmp_path):
    descriptor = parse_descriptor(
        {
            "name": "api",
            "workingDirectory": str(tmp_path),
            "entryPoint": "main.py",
            "instanceCount": 2,
            "autoRestart": True,
            "watchEnabled": True,
            "environment": {"DEBUG": True},
        }
    )

    assert descriptor.working_directory == tmp_path.resolve()
    assert descriptor.instance_count == 2
    assert descriptor.watch_enabled is True
    assert descriptor.environment == {"DEBUG": "true"}


def test_defaults_and_unknown_fields(tmp_path):
    descriptor = parse_descriptor({"name": "api", "script": "main.py", "max_memory_restart": "1G"}, base_dir=tmp_path)

    assert descriptor.instance_count == 1
    assert descriptor.auto_restart is False
    assert descriptor.watch_enabled is False
    assert descriptor.environment == {}
    assert descriptor.working_directory == tmp_path.resolve()


@pytest.mark.parametrize(
    "entry",
    [
        {"name": "", "script": "main.py"},
        {"name": "   ", "script": "main.py"},
        {"name": "api"},
        {"name": "api", "script": "main.py", "instances": 0},
        {"name": "api", "script": "main.py", "instances": -2},
        {"name": "api", "script": "main.py", "env": ["A=1"]},
        "not-a-mapping",
    ],
)
def test_malformed_descriptors_are_rejected(entry):
    with pytest.raises(ValidationError):
        parse_descriptor(entry)


def test_max_instances_uses_cpu_count():
    descriptor = parse_descriptor({"name": "api", "script": "main.py", "instances": "max"})
    assert descriptor.instance_count >= 1


def test_validate_runtime_requires_working_directory(tmp_path):
    descriptor = AppDescriptor(name="api", working_directory=tmp_path / "missing", entry_point="main.py")
    with pytest.raises(ValidationError):
        descriptor.validate_runtime()

    AppDescriptor(name="api", working_directory=tmp_path, entry_point="main.py").validate_runtime()


def test_child_env_overrides_parent(monkeypatch, tmp_path):
    monkeypatch.setenv("INHERITED", "parent")
    monkeypatch.setenv("PORT", "8080")
    descriptor = AppDescriptor(
        name="api", working_directory=tmp_path, entry_point="main.py", environment={"PORT": "5000"}
    )

    env = descriptor.child_env(2)

    assert env["INHERITED"] == "parent"
    assert env["PORT"] == "5000"
    assert env["SUPERVISOR_APP_NAME"] == "api"
    assert env["SUPERVISOR_INSTANCE"] == "2"


@pytest.mark.parametrize(
    "entry_point,interpreter,expected",
    [
        ("index.js", None, "node"),
        ("main.py", None, sys.executable),
        ("run.sh", None, "bash"),
        ("server", None, None),
        ("index.js", "none", None),
        ("app.ts", "ts-node", "ts-node"),
    ],
)
def test_interpreter_resolution(tmp_path, entry_point, interpreter, expected):
    descriptor = AppDescriptor(
        name="api", working_directory=tmp_path, entry_point=entry_point, interpreter=interpreter
    )
    assert descriptor.resolved_interpreter() == expected


def test_entry_path_is_relative_to_working_directory(tmp_path):
    descriptor = AppDescriptor(name="api", working_directory=tmp_path, entry_point="bin/server")
    assert descriptor.entry_path() == tmp_path / "bin" / "server"


def test_load_json_ecosystem_file(tmp_path):
    path = tmp_path / "ecosystem.json"
    path.write_text(json.dumps({"apps": [ECOSYSTEM_ENTRY]}))

    descriptors = load_descriptors(path)

    assert [d.name for d in descriptors] == ["form-dashboard-api"]
    assert descriptors[0].working_directory == (tmp_path / "server").resolve()


def test_load_yaml_list(tmp_path):
    path = tmp_path / "apps.yaml"
    path.write_text(
        "- name: web\n"
        "  script: web.py\n"
        "  instances: 2\n"
        "- name: worker\n"
        "  script: worker.py\n"
        "  autorestart: true\n"
    )

    descriptors = load_descriptors(path)

    assert [(d.name, d.instance_count, d.auto_restart) for d in descriptors] == [
        ("web", 2, False),
        ("worker", 1, True),
    ]


def test_bad_and_duplicate_entries_are_skipped(tmp_path):
    path = tmp_path / "ecosystem.json"
    path.write_text(
        json.dumps(
            [
                {"name": "api", "script": "a.py"},
                {"name": "broken", "script": "b.py", "instances": 0},
                {"name": "api", "script": "c.py"},
                {"name": "worker", "script": "d.py"},
            ]
        )
    )

    descriptors = load_descriptors(path)

    assert [d.name for d in descriptors] == ["api", "worker"]
    assert descriptors[0].entry_point == "a.py"


def test_unreadable_file_raises(tmp_path):
    path = tmp_path / "ecosystem.json"
    path.write_text("{not json")
    with pytest.raises(ValidationError):
        load_descriptors(path)

    with pytest.raises(ValidationError):
        load_descriptors(tmp_path / "missing.json")

    path.write_text(json.dumps({"apps": {"name": "api"}}))
    with pytest.raises(ValidationError):
        load_descriptors(path)
