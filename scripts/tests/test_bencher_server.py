#!/usr/bin/env python3
"""
Test suite for bencher_server.py module.

Runs the HTTP server on an ephemeral port with a scripted service, and with
a real pipeline around a stand-in `go` executable that never finishes.
"""

import json
import os
import signal
import socket
import sys
import threading
import time
from unittest.mock import patch

import httpx
import pytest

from bencher_server import NO_CHANGES_MESSAGE, _interrupt_on_sigterm, close_server, make_server, serve
from benchmark_models import Outcome, PipelineResult
from benchmark_utils import (
    AuthenticationError,
    BaselineReadFailure,
    BenchmarkService,
    GoBenchmarkRunner,
    NotificationFailure,
    PipelineCancelled,
    PipelineOrchestrator,
)
from comparison_utils import ChangeFilter, UTestComparator
from conftest import InMemoryBlobStore
from notification_utils import PostmarkNotifier
from snapshot_store import SnapshotStore

VALID_BODY = {"git_repo_url": "github.com/org/proj", "alert_emails": ["dev@example.com"], "public": False}


def process_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def wait_until(predicate, timeout: float = 10.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return predicate()


class ScriptedService:
    def __init__(self):
        self.result = PipelineResult(Outcome.CHANGED, urls={"latest": "mem://b/l"}, benchmarks="text", html_benchmarks="<table>")
        self.error: Exception | None = None
        self.requests = []

    def benchmark_and_email(self, request, cancel_event=None):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def service():
    return ScriptedService()


@pytest.fixture
def base_url(service):
    server = make_server(service, "127.0.0.1", 0)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_address[1]}"
    server.shutdown()
    server.server_close()


class TestHealthEndpoints:
    """Test cases for liveness endpoints."""

    @pytest.mark.parametrize("path", ["/ping", "/health"])
    def test_alive(self, base_url, path):
        resp = httpx.get(base_url + path)

        assert resp.status_code == 200
        assert resp.text.startswith("Alive\n\n")

    def test_unknown_path(self, base_url):
        assert httpx.get(base_url + "/nope").status_code == 404


class TestBenchmarkEndpoint:
    """Test cases for POST /benchmark."""

    def test_changed_result_is_json(self, base_url, service):
        resp = httpx.post(base_url + "/benchmark", json=VALID_BODY)

        assert resp.status_code == 200
        assert resp.json()["URLs"] == {"latest": "mem://b/l"}
        assert resp.json()["Benchmarks"] == "text"
        assert service.requests[0].git_repo_url == "github.com/org/proj"

    def test_no_change(self, base_url, service):
        service.result = PipelineResult(Outcome.NO_CHANGE_DETECTED)

        resp = httpx.post(base_url + "/benchmark", json=VALID_BODY)

        assert resp.status_code == 200
        assert resp.text == NO_CHANGES_MESSAGE

    def test_invalid_json(self, base_url, service):
        resp = httpx.post(base_url + "/benchmark", content=b"{not json")

        assert resp.status_code == 400
        assert service.requests == []

    def test_invalid_request(self, base_url, service):
        resp = httpx.post(base_url + "/benchmark", json={"git_repo_url": "github.com/org/proj", "alert_emails": []})

        assert resp.status_code == 400
        assert service.requests == []

    @pytest.mark.parametrize(
        ("error", "status"),
        [
            (AuthenticationError("Invalid secret"), 401),
            (PipelineCancelled("cancelled"), 503),
            (BaselineReadFailure("bucket unavailable"), 500),
        ],
    )
    def test_pipeline_errors(self, base_url, service, error, status):
        service.error = error

        resp = httpx.post(base_url + "/benchmark", json=VALID_BODY)

        assert resp.status_code == status

    def test_internal_error_names_failure(self, base_url, service):
        service.error = BaselineReadFailure("bucket unavailable")

        resp = httpx.post(base_url + "/benchmark", json=VALID_BODY)

        assert resp.text == "BaselineReadFailure: bucket unavailable\n"

    def test_notification_failure_returns_result(self, base_url, service):
        service.error = NotificationFailure("Sending benchmark report failed", service.result)

        resp = httpx.post(base_url + "/benchmark", json=VALID_BODY)

        assert resp.status_code == 502
        assert resp.json()["result"]["URLs"] == {"latest": "mem://b/l"}

    def test_unexpected_error_is_answered(self, base_url, service):
        """Errors outside the pipeline taxonomy still get a 500 response."""
        service.error = RuntimeError("boom")

        resp = httpx.post(base_url + "/benchmark", json=VALID_BODY)

        assert resp.status_code == 500
        assert resp.text == "internal server error\n"


class SlowGo:
    """A `go` on PATH that records its pid and sleeps, behind a real pipeline."""

    def __init__(self, tmp_path):
        self.pid_file = tmp_path / "go.pid"
        bin_dir = tmp_path / "bin"
        bin_dir.mkdir()
        go = bin_dir / "go"
        go.write_text(f'#!/bin/sh\necho $$ > "{self.pid_file}"\nexec sleep 60\n', encoding="utf-8")
        go.chmod(0o755)
        self.bin_dir = bin_dir

        source_root = tmp_path / "src"
        (source_root / VALID_BODY["git_repo_url"]).mkdir(parents=True)
        orchestrator = PipelineOrchestrator(
            GoBenchmarkRunner(source_root, timeout=120),
            SnapshotStore(InMemoryBlobStore(), "bench-bucket"),
            ChangeFilter(UTestComparator()),
        )
        self.service = BenchmarkService(orchestrator, PostmarkNotifier("token"), "bencher@example.com")

    def wait_for_pid(self) -> int:
        assert wait_until(lambda: self.pid_file.exists() and self.pid_file.read_text(encoding="utf-8").strip() != "")
        return int(self.pid_file.read_text(encoding="utf-8"))


@pytest.mark.skipif(sys.platform == "win32", reason="uses a POSIX shell script as go")
class TestCancellation:
    """Test cases for cancelling running benchmarks."""

    @pytest.fixture
    def slow_go(self, tmp_path, monkeypatch):
        slow = SlowGo(tmp_path)
        monkeypatch.setenv("PATH", f"{slow.bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")
        return slow

    def test_shutdown_kills_running_benchmark(self, slow_go):
        """Closing the server cancels in-flight runs and waits for them."""
        server = make_server(slow_go.service, "127.0.0.1", 0)
        threading.Thread(target=server.serve_forever, daemon=True).start()
        url = f"http://127.0.0.1:{server.server_address[1]}/benchmark"
        responses = []
        client = threading.Thread(target=lambda: responses.append(httpx.post(url, json=VALID_BODY, timeout=30)), daemon=True)
        client.start()

        pid = slow_go.wait_for_pid()
        server.shutdown()
        close_server(server)

        assert not process_alive(pid)
        client.join(10)
        assert responses[0].status_code == 503

    def test_client_disconnect_kills_its_benchmark(self, slow_go):
        server = make_server(slow_go.service, "127.0.0.1", 0)
        threading.Thread(target=server.serve_forever, daemon=True).start()
        body = json.dumps(VALID_BODY).encode("utf-8")
        head = f"POST /benchmark HTTP/1.1\r\nHost: localhost\r\nContent-Type: application/json\r\nContent-Length: {len(body)}\r\n\r\n"
        try:
            with socket.create_connection(("127.0.0.1", server.server_address[1])) as sock:
                sock.sendall(head.encode("ascii") + body)
                pid = slow_go.wait_for_pid()

            assert wait_until(lambda: not process_alive(pid))
            assert not server.cancel_event.is_set()
        finally:
            server.shutdown()
            close_server(server)


class TestServe:
    """Test cases for the serve entry point."""

    def test_sigterm_interrupts(self):
        with pytest.raises(KeyboardInterrupt):
            _interrupt_on_sigterm(signal.SIGTERM, None)

    def test_sigterm_handler_installed_and_shutdown_cancels(self, service):
        with patch("bencher_server.make_server") as mock_make, patch("bencher_server.signal.signal") as mock_signal:
            server = mock_make.return_value
            server.server_address = ("", 7788)
            server.serve_forever.side_effect = KeyboardInterrupt

            serve(service)

        mock_signal.assert_any_call(signal.SIGTERM, _interrupt_on_sigterm)
        server.cancel_event.set.assert_called_once()
        server.server_close.assert_called_once()
