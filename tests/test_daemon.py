"""Tests for the taskbridge agent daemon."""

from __future__ import annotations

import json
import os
import socket
import threading
import time
import urllib.error
import urllib.request
from unittest.mock import patch

import pytest
import requests

from taskbridge.daemon import (
    PID_FILE,
    AgentDaemon,
    get_agent_status,
    is_running,
    read_pid,
    request_sync,
)
from taskbridge.errors import RegistrationError, TransportError
from taskbridge.models import SyncMapping


@pytest.fixture
def daemon(config, automation, client):
    svc = AgentDaemon(config, automation=automation, client=client)
    yield svc
    if svc.state.running:
        svc.stop()


def _get(svc, path):
    url = f"http://127.0.0.1:{svc.port}{path}"
    with urllib.request.urlopen(url, timeout=2) as resp:
        return resp.status, json.loads(resp.read())


def _post(svc, path):
    req = urllib.request.Request(f"http://127.0.0.1:{svc.port}{path}", data=b"", method="POST")
    try:
        with urllib.request.urlopen(req, timeout=2) as resp:
            return resp.status, json.loads(resp.read())
    except urllib.error.HTTPError as exc:
        return exc.code, json.loads(exc.read())


def _wait_idle(svc, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not svc.scheduler.in_progress and svc.state.cycles_completed:
            return
        time.sleep(0.02)


class TestPidManagement:
    """Tests for PID file read/write."""

    def test_no_pid_file(self, agent_home):
        assert read_pid(agent_home) is None

    def test_is_running_false(self, agent_home):
        assert is_running(agent_home) is False

    def test_own_pid_is_running(self, agent_home):
        (agent_home / PID_FILE).write_text(str(os.getpid()))
        assert read_pid(agent_home) == os.getpid()

    def test_stale_pid_cleaned(self, agent_home):
        pid_path = agent_home / PID_FILE
        pid_path.write_text("999999999")
        assert read_pid(agent_home) is None
        assert not pid_path.exists()

    def test_garbage_pid_cleaned(self, agent_home):
        pid_path = agent_home / PID_FILE
        pid_path.write_text("not-a-pid")
        assert read_pid(agent_home) is None


class TestAgentLifecycle:
    """Start and stop."""

    def test_start_and_stop(self, daemon, config, client):
        daemon.start()
        try:
            assert daemon.state.running is True
            assert (config.home / PID_FILE).exists()
            assert config.log_file.exists()
            client.register_agent.assert_called_once()
        finally:
            daemon.stop()
        assert daemon.state.running is False
        assert not (config.home / PID_FILE).exists()
        assert daemon.state.snapshot()["status"] == "disconnected"
        client.close.assert_called_once()

    def test_first_cycle_runs_immediately(self, daemon, client):
        daemon.start()
        _wait_idle(daemon)
        assert client.health_check.called
        assert daemon.state.cycles_completed >= 1

    def test_registration_failure(self, daemon, config, client):
        client.register_agent.side_effect = TransportError("401")
        with pytest.raises(RegistrationError):
            daemon.start()
        assert not (config.home / PID_FILE).exists()
        daemon.stop()

    def test_busy_port_keeps_agent_running(self, config, automation, client):
        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        blocker.bind(("127.0.0.1", 0))
        blocker.listen(1)
        busy = config.model_copy(update={"port": blocker.getsockname()[1]})
        svc = AgentDaemon(busy, automation=automation, client=client)
        try:
            svc.start()
            assert svc.state.running is True
            assert svc.api_available is False
            assert any("API server" in e for e in svc.state.errors)
            _wait_idle(svc)
            assert svc.state.cycles_completed >= 1
        finally:
            svc.stop()
            blocker.close()
        assert svc.state.running is False
        assert not (busy.home / PID_FILE).exists()

    def test_log_lines_written(self, daemon, config):
        daemon.start()
        daemon.stop()
        text = config.log_file.read_text()
        assert "[taskbridge.daemon] INFO: Agent starting" in text


class TestAgentAPI:
    """Local HTTP API."""

    def test_health(self, daemon):
        daemon.start()
        status, data = _get(daemon, "/health")
        assert status == 200
        assert data["status"] == "ok"
        assert data["running"] is True

    def test_status(self, daemon):
        daemon.start()
        _wait_idle(daemon)
        status, data = _get(daemon, "/status")
        assert data["status"] == "connected"
        assert data["intervalMinutes"] == 5
        assert "pid" in data

    def test_query_string_ignored_in_routing(self, daemon):
        daemon.start()
        _wait_idle(daemon)
        status, data = _get(daemon, "/health?x=1")
        assert status == 200
        assert data["status"] == "ok"
        status, _ = _post(daemon, "/sync/trigger?src=cli")
        assert status == 202

    def test_unknown_path(self, daemon):
        daemon.start()
        with pytest.raises(urllib.error.HTTPError) as exc_info:
            _get(daemon, "/nope")
        assert exc_info.value.code == 404

    def test_trigger_accepted(self, daemon, client):
        daemon.start()
        _wait_idle(daemon)
        status, data = _post(daemon, "/sync/trigger")
        assert status == 202
        assert data["message"] == "Sync started"

    def test_trigger_conflict_while_syncing(self, daemon, client, automation):
        gate = threading.Event()
        automation.gate = gate
        client.get_sync_mappings.return_value = [SyncMapping(id="m1", local_project_name="Work")]
        daemon.start()
        try:
            assert automation.entered.wait(timeout=3)
            status, data = _post(daemon, "/sync/trigger")
            assert status == 409
            assert data["error"] == "Sync already in progress"
            _, health = _get(daemon, "/health")
            assert health["syncInProgress"] is True
        finally:
            gate.set()


class TestClientHelpers:
    """Helpers the CLI uses to talk to a running agent."""

    def test_status_unreachable(self):
        with patch("requests.get", side_effect=requests.ConnectionError("x")):
            assert get_agent_status(1) is None

    def test_request_sync_against_live_agent(self, daemon):
        daemon.start()
        _wait_idle(daemon)
        code, body = request_sync(daemon.port)
        assert code in (202, 409)
