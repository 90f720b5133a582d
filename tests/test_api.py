import json
import time

import pytest
from fastapi.testclient import TestClient

from appsupervisor.config import config
from appsupervisor.main import LogWriter, app
from appsupervisor.models import LogEntry, initialize_db

SERVER = """
import os, time
print("serving on", os.environ["PORT"], os.environ["NODE_ENV"], flush=True)
time.sleep(60)
"""


@pytest.fixture
def client(tmp_path, monkeypatch):
    server_dir = tmp_path / "server"
    server_dir.mkdir()
    (server_dir / "index.py").write_text(SERVER)
    apps_file = tmp_path / "ecosystem.json"
    apps_file.write_text(
        json.dumps(
            {
                "apps": [
                    {
                        "name": "form-dashboard-api",
                        "cwd": "./server",
                        "script": "index.py",
                        "instances": 2,
                        "autorestart": True,
                        "watch": False,
                        "env": {"NODE_ENV": "production", "PORT": 5000},
                    },
                    {"name": "broken", "cwd": "./server", "script": "index.py", "instances": 0},
                ]
            }
        )
    )

    monkeypatch.setattr(config, "apps_file", apps_file)
    monkeypatch.setattr(config, "db_path", tmp_path / "supervisor.db")
    monkeypatch.setattr(config, "logs_dir", tmp_path / "logs")
    monkeypatch.setattr(config, "kill_timeout", 2)

    with TestClient(app) as test_client:
        yield test_client


def poll(fn, timeout=5.0):
    deadline = time.monotonic() + timeout
    while True:
        result = fn()
        if result:
            return result
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        time.sleep(0.05)


def test_declared_apps_start_on_startup(client):
    response = client.get("/api/apps")
    assert response.status_code == 200
    apps = response.json()

    assert [a["name"] for a in apps] == ["form-dashboard-api"]
    instances = apps[0]["instances"]
    assert len(instances) == 2
    assert all(i["state"] == "running" for i in instances)
    assert len({i["pid"] for i in instances}) == 2


def test_get_unknown_app_is_404(client):
    assert client.get("/api/apps/ghost").status_code == 404
    assert client.post("/api/apps/ghost/stop").status_code == 404


def test_stop_and_start(client):
    response = client.post("/api/apps/form-dashboard-api/stop")
    assert response.status_code == 200
    assert [i["state"] for i in response.json()["instances"]] == ["stopped", "stopped"]

    response = client.post("/api/apps/form-dashboard-api/stop")
    assert response.status_code == 200

    response = client.post("/api/apps/form-dashboard-api/start")
    assert response.status_code == 200
    assert [i["state"] for i in response.json()["instances"]] == ["running", "running"]


def test_restart_counts(client):
    response = client.post("/api/apps/form-dashboard-api/restart")
    assert response.status_code == 200
    assert [i["restart_count"] for i in response.json()["instances"]] == [1, 1]


def test_reload_with_new_instance_count(client):
    response = client.post("/api/apps/form-dashboard-api/reload", json={"cwd": str(config.apps_file.parent / "server"), "script": "index.py", "instances": 1})
    assert response.status_code == 200
    body = response.json()
    assert body["instance_count"] == 1
    assert len(body["instances"]) == 1


def test_output_is_captured(client):
    lines = poll(lambda: client.get("/api/apps/form-dashboard-api/logs/tail").json())
    assert any(line["message"] == "serving on 5000 production" for line in lines)

    history = poll(lambda: client.get("/api/apps/form-dashboard-api/logs", params={"instance": 1}).json())
    assert all(entry["instance"] == 1 for entry in history)


def test_events_and_status(client):
    events = client.get("/api/apps/form-dashboard-api/events").json()
    assert sorted(e["kind"] for e in events) == ["started", "started"]

    status = client.get("/api/status").json()
    assert status["total"] == 1
    assert status["instances"] == 2
    assert status["running"] == 2
    assert status["alerts"] == []


def test_create_and_delete_app(client, tmp_path):
    response = client.post(
        "/api/apps",
        json={"name": "worker", "cwd": str(tmp_path / "server"), "script": "index.py", "env": {"PORT": 1, "NODE_ENV": "test"}},
    )
    assert response.status_code == 200
    assert response.json()["instances"][0]["state"] == "running"

    assert client.post("/api/apps", json={"name": "worker", "script": "index.py"}).status_code == 409
    assert client.post("/api/apps", json={"name": "", "script": "index.py"}).status_code == 422

    assert client.delete("/api/apps/worker").status_code == 200
    assert client.get("/api/apps/worker").status_code == 404


def test_launch_failure_is_500(client, tmp_path):
    response = client.post(
        "/api/apps", json={"name": "nothing", "cwd": str(tmp_path / "server"), "script": "missing.py"}
    )
    assert response.status_code == 500


async def test_log_writer_batches_inserts_off_the_loop(tmp_path):
    initialize_db(tmp_path / "batch.db")
    writer = LogWriter(flush_interval=60)

    for i in range(3):
        writer("api", 0, "info", f"line {i}")
    assert LogEntry.select().count() == 0

    await writer.flush()

    messages = [entry.message for entry in LogEntry.select().order_by(LogEntry.id)]
    assert messages == ["line 0", "line 1", "line 2"]


async def test_log_writer_flushes_on_stop(tmp_path):
    initialize_db(tmp_path / "stop.db")
    writer = LogWriter(flush_interval=60)
    await writer.start()

    writer("api", 1, "error", "x" * 5000)
    await writer.stop()

    entry = LogEntry.get()
    assert entry.instance == 1
    assert len(entry.message) == 2000
