#!/usr/bin/env python3
"""
bencher_server.py - HTTP front end for the benchmark pipeline

Endpoints:
    POST /benchmark   run the pipeline for a JSON request and e-mail the report
    GET  /ping        liveness check
    GET  /health      liveness check (alias)
"""

import json
import logging
import select
import signal
import socket
import threading
import time
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

try:
    # When executed as a script from scripts/
    from benchmark_models import PipelineResult  # type: ignore[no-redef]
    from benchmark_utils import (  # type: ignore[no-redef]
        AuthenticationError,
        BencherError,
        BenchmarkRequest,
        BenchmarkService,
        InvalidRequestError,
        NotificationFailure,
        PipelineCancelled,
    )
except ModuleNotFoundError:
    # When imported as a module (e.g., scripts.bencher_server)
    from scripts.benchmark_models import PipelineResult  # type: ignore[no-redef]
    from scripts.benchmark_utils import (  # type: ignore[no-redef]
        AuthenticationError,
        BencherError,
        BenchmarkRequest,
        BenchmarkService,
        InvalidRequestError,
        NotificationFailure,
        PipelineCancelled,
    )

logger = logging.getLogger(__name__)

MAX_BODY_BYTES = 1 << 20
NO_CHANGES_MESSAGE = "No changes detected!"

# How often a running request checks for client disconnect or server shutdown (seconds)
WATCH_INTERVAL = 0.2


class BenchmarkRequestHandler(BaseHTTPRequestHandler):
    # Injected by make_server:
    service: BenchmarkService
    cancel_event: threading.Event

    def log_message(self, fmt: str, *args: object) -> None:
        logger.info("%s - %s", self.address_string(), fmt % args)

    def _send(self, status: HTTPStatus, body: str, content_type: str = "text/plain; charset=utf-8") -> None:
        payload = body.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(payload)))
        try:
            self.end_headers()
            self.wfile.write(payload)
        except ConnectionError as e:
            logger.warning("Client %s went away before the response was sent: %s", self.address_string(), e)

    def _client_disconnected(self) -> bool:
        """Whether the peer closed its end; the request body has already been consumed."""
        try:
            readable, _, _ = select.select([self.connection], [], [], 0)
            if not readable:
                return False
            return self.connection.recv(1, socket.MSG_PEEK) == b""
        except OSError:
            return True

    def _watch_request(self, run_event: threading.Event, done: threading.Event) -> None:
        """Set run_event when the server shuts down or the client disconnects."""
        while not done.is_set():
            if self.cancel_event.is_set():
                logger.info("Server shutting down, cancelling run for %s", self.address_string())
                run_event.set()
                return
            if self._client_disconnected():
                logger.info("Client %s disconnected, cancelling its run", self.address_string())
                run_event.set()
                return
            done.wait(WATCH_INTERVAL)

    def _run_benchmark(self, request: BenchmarkRequest) -> PipelineResult:
        run_event = threading.Event()
        done = threading.Event()
        watcher = threading.Thread(target=self._watch_request, args=(run_event, done), daemon=True)
        watcher.start()
        try:
            return self.service.benchmark_and_email(request, run_event)
        finally:
            done.set()
            watcher.join()

    def _send_json(self, status: HTTPStatus, data: object) -> None:
        self._send(status, json.dumps(data), "application/json")

    def do_GET(self) -> None:  # noqa: N802
        if self.path in ("/ping", "/health"):
            self._send(HTTPStatus.OK, f"Alive\n\n{int(time.time())}\n")
            return
        self._send(HTTPStatus.NOT_FOUND, "not found\n")

    def do_POST(self) -> None:  # noqa: N802
        if self.path != "/benchmark":
            self._send(HTTPStatus.NOT_FOUND, "not found\n")
            return

        try:
            length = int(self.headers.get("Content-Length", "0") or "0")
        except ValueError:
            self._send(HTTPStatus.BAD_REQUEST, "invalid Content-Length\n")
            return
        if length <= 0 or length > MAX_BODY_BYTES:
            self._send(HTTPStatus.BAD_REQUEST, "request body missing or too large\n")
            return

        try:
            data = json.loads(self.rfile.read(length).decode("utf-8"))
            request = BenchmarkRequest.from_dict(data)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            self._send(HTTPStatus.BAD_REQUEST, f"invalid JSON: {e}\n")
            return
        except InvalidRequestError as e:
            self._send(HTTPStatus.BAD_REQUEST, f"{e}\n")
            return

        try:
            result = self._run_benchmark(request)
        except InvalidRequestError as e:
            self._send(HTTPStatus.BAD_REQUEST, f"{e}\n")
            return
        except AuthenticationError as e:
            self._send(HTTPStatus.UNAUTHORIZED, f"{e}\n")
            return
        except NotificationFailure as e:
            logger.error("Notification failed for %r: %s", request.git_repo_url, e)
            self._send_json(HTTPStatus.BAD_GATEWAY, {"error": str(e), "result": e.result.to_dict()})
            return
        except PipelineCancelled as e:
            self._send(HTTPStatus.SERVICE_UNAVAILABLE, f"{e}\n")
            return
        except BencherError as e:
            logger.error("Pipeline failed for %r: %s", request.git_repo_url, e)
            self._send(HTTPStatus.INTERNAL_SERVER_ERROR, f"{type(e).__name__}: {e}\n")
            return
        except Exception:
            logger.exception("Unexpected error while benchmarking %r", request.git_repo_url)
            self._send(HTTPStatus.INTERNAL_SERVER_ERROR, "internal server error\n")
            return

        if result.no_change:
            self._send(HTTPStatus.OK, NO_CHANGES_MESSAGE)
            return
        self._send_json(HTTPStatus.OK, result.to_dict())


def make_server(service: BenchmarkService, host: str = "", port: int = 7788, cancel_event: threading.Event | None = None) -> ThreadingHTTPServer:
    """
    Create (but do not start) the HTTP server.

    Args:
        service: Service handling benchmark requests
        host: Interface to bind ("" for all)
        port: Port to bind (0 picks a free port)
        cancel_event: Event shared with in-flight runs; set it to abort them

    Returns:
        ThreadingHTTPServer ready for serve_forever()
    """
    cancel_event = cancel_event or threading.Event()
    attrs = {"service": service, "cancel_event": cancel_event}
    handler = type("BoundBenchmarkRequestHandler", (BenchmarkRequestHandler,), attrs)
    server = ThreadingHTTPServer((host, port), handler)
    # server_close() joins handler threads, which end once their runs are cancelled
    server.daemon_threads = False
    server.cancel_event = cancel_event  # type: ignore[attr-defined]
    return server


def close_server(server: ThreadingHTTPServer) -> None:
    """Cancel in-flight runs, then close the socket and wait for handler threads to finish."""
    server.cancel_event.set()  # type: ignore[attr-defined]
    server.server_close()


def _interrupt_on_sigterm(signum: int, frame: object) -> None:
    raise KeyboardInterrupt


def serve(service: BenchmarkService, host: str = "", port: int = 7788) -> None:
    """Serve until interrupted or terminated; in-flight benchmark runs are cancelled on shutdown."""
    server = make_server(service, host, port)
    previous_handler = None
    if threading.current_thread() is threading.main_thread():
        previous_handler = signal.signal(signal.SIGTERM, _interrupt_on_sigterm)
    logger.info("Running bencher server at %s:%d", host or "0.0.0.0", server.server_address[1])  # noqa: S104
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down, cancelling running benchmarks")
    finally:
        close_server(server)
        if previous_handler is not None:
            signal.signal(signal.SIGTERM, previous_handler)
