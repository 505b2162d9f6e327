"""Tests for the supervisor HTTP API."""

import asyncio
import shlex
import sys
import threading
import time

import pytest
from fastapi.testclient import TestClient

from conftest import wait_until
from gateway_supervisor.main import Runtime, create_app
from gateway_supervisor.models import ChildState, SyncOutcome
from gateway_supervisor.monitor import ResourceMonitor
from gateway_supervisor.process import ProcessSupervisor
from gateway_supervisor.scheduler import SyncScheduler
from gateway_supervisor.secret_store import SecretResolver
from gateway_supervisor.workspace import agent_identity


def poll(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.02)
    raise AssertionError("condition not met within timeout")


@pytest.fixture
def app_config(config):
    config.workspace_dir.mkdir(parents=True, exist_ok=True)
    config.gateway_command = shlex.join([sys.executable, "-c", "import time; time.sleep(30)"])
    return config


@pytest.fixture
def client(app_config):
    app = create_app(app_config)
    with TestClient(app) as client:
        poll(lambda: app.state.runtime.initialized)
        yield client


def test_status(client):
    for path in ("/", "/status"):
        response = client.get(path)
        assert response.status_code == 200
        body = response.json()
        assert body["agent"] == "employee-7"
        assert body["status"] == "running"
        assert body["gateway"] == "running"
        assert body["pid"] is not None
        assert body["skills_sync"] == {"enabled": False, "armed": False, "in_progress": False}


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["health"] == "healthy"
    assert body["services"] == {"supervisor": "running", "gateway": "running", "skills_sync": "disabled"}
    assert body["gateway_metrics"]["spawn_count"] == 1
    assert body["supervisor"]["pid"] > 0
    assert body["skills"]["exists"] is False
    assert body["last_sync"] is None


def test_restart_returns_before_completion(client):
    runtime = client.app.state.runtime
    first_pid = runtime.supervisor.pid

    response = client.post("/restart", json={"reason": "operator"})

    assert response.status_code == 202
    assert response.json()["agent"] == "employee-7"
    assert response.json()["scheduled"] is True
    poll(lambda: runtime.supervisor.spawn_count == 2 and runtime.supervisor.pid is not None)
    assert runtime.supervisor.pid != first_pid


def test_restart_without_body(client):
    response = client.post("/restart")
    assert response.status_code == 202


def test_sync_now_when_disabled(client):
    response = client.post("/sync-now")

    assert response.status_code == 200
    assert response.json()["status"] == "skipped"
    assert response.json()["reason"] == "disabled"
    assert client.app.state.runtime.supervisor.spawn_count == 1

    assert client.post("/sync-skills").json()["status"] == "skipped"


def test_sync_failure_returns_500(app_config, monkeypatch):
    monkeypatch.delenv("TEST_SKILLS_TOKEN", raising=False)
    app_config.skills_sync_enabled = True
    app_config.skills_repo_url = "https://github.com/example/skills.git"

    with TestClient(create_app(app_config)) as client:
        runtime = client.app.state.runtime
        poll(lambda: runtime.initialized)
        # The startup sync failed too, but the gateway still came up.
        assert runtime.scheduler.last_outcome.reason == "no-credential"
        assert runtime.supervisor.is_running()
        assert client.get("/status").json()["skills_sync"]["armed"] is True

        response = client.post("/sync-now")

    assert response.status_code == 500
    detail = response.json()["detail"]
    assert detail["status"] == "failed"
    assert detail["reason"] == "no-credential"
    assert detail["agent"] == "employee-7"


def test_whatsapp_webhook(client):
    for method in ("get", "post"):
        response = getattr(client, method)("/webhook/whatsapp")
        assert response.status_code == 200
        assert "employee-7" in response.json()["message"]


def test_shutdown_stops_gateway(app_config):
    with TestClient(create_app(app_config)) as client:
        runtime = client.app.state.runtime
        poll(lambda: runtime.initialized)
        pid = runtime.supervisor.pid
        assert pid is not None

    assert runtime.supervisor.pid is None
    assert runtime.supervisor.request_restart("api") is False


class GatedSynchronizer:
    """Enabled synchronizer whose sync waits on a threading.Event."""

    enabled = True

    def __init__(self):
        self.gate = threading.Event()
        self.calls = 0

    async def sync(self):
        self.calls += 1
        while not self.gate.is_set():
            await asyncio.sleep(0.01)
        return SyncOutcome.no_change("rev1")


def gated_runtime(config):
    synchronizer = GatedSynchronizer()
    supervisor = ProcessSupervisor.from_config(config)
    return Runtime(
        config=config,
        identity=agent_identity(config),
        secrets=SecretResolver(environ={}),
        synchronizer=synchronizer,
        supervisor=supervisor,
        scheduler=SyncScheduler(synchronizer, supervisor),
        monitor=ResourceMonitor(supervisor, config.skills_dir),
    )


def test_status_is_initializing_during_startup_sync(app_config):
    runtime = gated_runtime(app_config)

    with TestClient(create_app(app_config, runtime)) as client:
        poll(lambda: runtime.synchronizer.calls == 1)

        body = client.get("/status").json()
        assert body["status"] == "initializing"
        assert body["gateway"] == "absent"
        assert body["skills_sync"]["in_progress"] is True
        assert client.get("/health").status_code == 200

        runtime.synchronizer.gate.set()
        poll(lambda: runtime.initialized)
        body = client.get("/status").json()
        assert body["status"] == "running"
        assert body["gateway"] == "running"
        assert body["skills_sync"]["armed"] is True


@pytest.mark.asyncio
async def test_shutdown_during_startup_cancels_it(app_config):
    runtime = gated_runtime(app_config)

    task = runtime.begin_startup()
    await wait_until(lambda: runtime.synchronizer.calls == 1)
    await runtime.shutdown()

    assert task.cancelled()
    assert not runtime.initialized
    assert runtime.supervisor.spawn_count == 0
    assert runtime.supervisor.status() is ChildState.ABSENT
    runtime.synchronizer.gate.set()
    await wait_until(lambda: not runtime.scheduler.in_progress)
    assert runtime.supervisor.spawn_count == 0
