#!/usr/bin/env python3
"""
benchmark_utils.py - Benchmark execution, baseline comparison and promotion

This module provides:
- Running a repository's Go benchmark suite and capturing its measurements
- Comparing new measurements against the stored "latest" baseline
- Promoting new measurements to baseline and storing versioned snapshots
- Request validation, shared-secret checks and e-mail notification

A pipeline run either records a first baseline, ends with no detected
change (nothing is written), or stores four snapshots (raw and results,
each as "latest" and as a time-stamped copy) and reports the change.
"""

import hmac
import logging
import subprocess
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

try:
    # When executed as a script from scripts/
    from bencher_config import BencherConfig, load_repository_secrets  # type: ignore[no-redef]
    from benchmark_models import (  # type: ignore[no-redef]
        LATEST_VARIANT,
        MEASUREMENT_PREFIX,
        MeasurementSet,
        Outcome,
        PipelineResult,
        SnapshotKey,
        parse_config_line,
        results_variant,
        timestamp_variant,
    )
    from comparison_utils import ChangeFilter, UTestComparator  # type: ignore[no-redef]
    from notification_utils import NotificationError, Notifier, PostmarkNotifier  # type: ignore[no-redef]
    from report_utils import render, render_email  # type: ignore[no-redef]
    from snapshot_store import LocalBlobStore, SnapshotStore, StorageError  # type: ignore[no-redef]
    from subprocess_utils import CommandCancelledError, ExecutableNotFoundError, run_cancellable_command  # type: ignore[no-redef]
except ModuleNotFoundError:
    # When imported as a module (e.g., scripts.benchmark_utils)
    from scripts.bencher_config import BencherConfig, load_repository_secrets  # type: ignore[no-redef]
    from scripts.benchmark_models import (  # type: ignore[no-redef]
        LATEST_VARIANT,
        MEASUREMENT_PREFIX,
        MeasurementSet,
        Outcome,
        PipelineResult,
        SnapshotKey,
        parse_config_line,
        results_variant,
        timestamp_variant,
    )
    from scripts.comparison_utils import ChangeFilter, UTestComparator  # type: ignore[no-redef]
    from scripts.notification_utils import NotificationError, Notifier, PostmarkNotifier  # type: ignore[no-redef]
    from scripts.report_utils import render, render_email  # type: ignore[no-redef]
    from scripts.snapshot_store import LocalBlobStore, SnapshotStore, StorageError  # type: ignore[no-redef]
    from scripts.subprocess_utils import CommandCancelledError, ExecutableNotFoundError, run_cancellable_command  # type: ignore[no-redef]

logger = logging.getLogger(__name__)

# Configuration lines of `go test -bench` output kept next to measurements
CONFIG_KEYS = ("goos", "goarch", "pkg", "cpu")


class BencherError(Exception):
    """Base exception for pipeline failures."""


class MeasurementFailure(BencherError):
    """Raised when the benchmark run failed or produced no measurements."""


class PipelineCancelled(BencherError):
    """Raised when the caller cancelled the run while benchmarks were executing."""


class BaselineReadFailure(BencherError):
    """Raised when a stored baseline exists but cannot be retrieved."""


class PersistFailure(BencherError):
    """Raised when a snapshot write failed; earlier writes are kept."""

    def __init__(self, key: str, urls: dict[str, str], reason: str):
        super().__init__(f"Storing snapshot {key!r} failed: {reason}")
        self.key = key
        self.urls = urls


class NotificationFailure(BencherError):
    """Raised when the report was computed and stored but could not be delivered."""

    def __init__(self, message: str, result: PipelineResult):
        super().__init__(message)
        self.result = result


class InvalidRequestError(BencherError):
    """Raised when an inbound benchmark request is malformed."""


class AuthenticationError(BencherError):
    """Raised when the shared secret of a request does not match."""


class MeasurementRunner(Protocol):
    """Produces the measurements of one benchmark run."""

    def run(self, repository: str, cancel_event: threading.Event | None = None) -> MeasurementSet: ...


def filter_benchmark_output(output: str) -> MeasurementSet:
    """
    Keep only measurement and configuration lines of benchmark output.

    Args:
        output: Raw stdout of the benchmark command

    Returns:
        MeasurementSet with the kept lines joined by newlines

    Raises:
        MeasurementFailure: If no measurement line was found
    """
    kept = []
    measurements = 0
    for raw_line in output.split("\n"):
        line = raw_line.strip()
        if line.startswith(MEASUREMENT_PREFIX):
            kept.append(line)
            measurements += 1
            continue
        parsed = parse_config_line(line)
        if parsed and parsed[0] in CONFIG_KEYS:
            kept.append(line)

    if measurements == 0:
        msg = "no benchmarks found!"
        raise MeasurementFailure(msg)
    return MeasurementSet.from_text("\n".join(kept))


def validate_repository(repository: str) -> str:
    """
    Validate a repository reference such as "github.com/org/project".

    Args:
        repository: Repository reference from a request

    Returns:
        The reference with surrounding whitespace removed

    Raises:
        InvalidRequestError: If the reference is blank, absolute or climbs directories
    """
    repository = (repository or "").strip()
    if not repository:
        msg = "git_repo_url must be a non-blank string"
        raise InvalidRequestError(msg)
    parts = repository.split("/")
    if repository.startswith("/") or any(part in ("", ".", "..") for part in parts):
        msg = f"Invalid repository reference: {repository!r}"
        raise InvalidRequestError(msg)
    return repository


class GoBenchmarkRunner:
    """Run `go test -bench` in a checked-out repository."""

    def __init__(self, source_root: Path, count: int = 5, timeout: int = 1800):
        self.source_root = source_root
        self.count = count
        self.timeout = timeout

    def bench_args(self) -> list[str]:
        return ["test", "-run=^$", "-bench=.", f"-count={self.count}", "./..."]

    def run(self, repository: str, cancel_event: threading.Event | None = None) -> MeasurementSet:
        """
        Run the benchmark suite of a repository.

        Args:
            repository: Repository reference, resolved under source_root
            cancel_event: Event that aborts the run when set

        Returns:
            MeasurementSet of the run

        Raises:
            MeasurementFailure: If the suite could not run or produced nothing
            PipelineCancelled: If cancel_event was set during the run
        """
        workdir = self.source_root / repository
        if not workdir.is_dir():
            msg = f"Repository checkout not found: {workdir}"
            raise MeasurementFailure(msg)

        logger.info("Starting benchmarks for %r, this may take a while", repository)
        try:
            result = run_cancellable_command("go", self.bench_args(), cwd=workdir, cancel_event=cancel_event, timeout=self.timeout)
        except CommandCancelledError as e:
            msg = f"Benchmarks for {repository!r} were cancelled"
            raise PipelineCancelled(msg) from e
        except ExecutableNotFoundError as e:
            raise MeasurementFailure(str(e)) from e
        except subprocess.TimeoutExpired as e:
            msg = f"Benchmark execution timed out after {self.timeout} seconds"
            raise MeasurementFailure(msg) from e
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or "").strip().splitlines()
            detail = stderr[-1] if stderr else "no error output"
            msg = f"go test exited with status {e.returncode}: {detail}"
            raise MeasurementFailure(msg) from e
        except OSError as e:
            msg = f"Could not run benchmarks: {e}"
            raise MeasurementFailure(msg) from e

        logger.info("Done running benchmarks for %r", repository)
        return filter_benchmark_output(result.stdout)


class RepositoryLocks:
    """One in-process lock per repository, held while its baseline is read and replaced."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    @contextmanager
    def hold(self, repository: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(repository, threading.Lock())
        with lock:
            yield


class PipelineOrchestrator:
    """Measure, compare against the stored baseline, and promote changed results."""

    def __init__(
        self,
        runner: MeasurementRunner,
        snapshots: SnapshotStore,
        change_filter: ChangeFilter,
        clock: Callable[[], datetime] = datetime.now,
        locks: RepositoryLocks | None = None,
        advance_baseline_on_no_change: bool = False,
    ):
        self.runner = runner
        self.snapshots = snapshots
        self.change_filter = change_filter
        self.clock = clock
        self.locks = locks or RepositoryLocks()
        self.advance_baseline_on_no_change = advance_baseline_on_no_change

    def run(self, repository: str, public: bool, cancel_event: threading.Event | None = None) -> PipelineResult:
        """
        Run one benchmark pipeline invocation.

        Args:
            repository: Repository reference
            public: Whether stored snapshots are publicly link-accessible
            cancel_event: Event that aborts the benchmark run when set

        Returns:
            PipelineResult with outcome FIRST_BASELINE, NO_CHANGE_DETECTED or CHANGED

        Raises:
            MeasurementFailure: If no usable measurements were produced
            PipelineCancelled: If the run was cancelled
            BaselineReadFailure: If the stored baseline cannot be read
            PersistFailure: If a snapshot write failed
        """
        after = self._measure(repository, cancel_event)
        variant = timestamp_variant(self.clock())

        if cancel_event is not None and cancel_event.is_set():
            msg = f"Pipeline for {repository!r} was cancelled"
            raise PipelineCancelled(msg)

        with self.locks.hold(repository):
            if not self._baseline_exists(repository):
                logger.info("No stored benchmarks for %r yet, recording the first baseline", repository)
                urls = self._persist(repository, [(LATEST_VARIANT, after.content), (variant, after.content)], public)
                return PipelineResult(Outcome.FIRST_BASELINE, urls=urls, benchmarks=after.text)

            before = self._read_baseline(repository)
            tables = self.change_filter.compare(before, after)

            if not tables:
                logger.info("No changes detected for %r", repository)
                urls = {}
                if self.advance_baseline_on_no_change:
                    urls = self._persist(repository, [(LATEST_VARIANT, after.content), (variant, after.content)], public)
                return PipelineResult(Outcome.NO_CHANGE_DETECTED, urls=urls)

            text_report, html_report = render(tables)
            report = text_report.encode("utf-8")
            logger.info("Detected changes in %d table(s) for %r", len(tables), repository)

            urls = self._persist(
                repository,
                [
                    (LATEST_VARIANT, after.content),
                    (variant, after.content),
                    (results_variant(LATEST_VARIANT), report),
                    (results_variant(variant), report),
                ],
                public,
            )
            return PipelineResult(Outcome.CHANGED, urls=urls, benchmarks=text_report, html_benchmarks=html_report)

    def _measure(self, repository: str, cancel_event: threading.Event | None) -> MeasurementSet:
        try:
            measurements = self.runner.run(repository, cancel_event)
        except (MeasurementFailure, PipelineCancelled):
            raise
        except OSError as e:
            msg = f"Running benchmarks for {repository!r} failed: {e}"
            raise MeasurementFailure(msg) from e

        if not measurements.is_valid():
            msg = f"no benchmarks found for {repository!r}"
            raise MeasurementFailure(msg)
        return measurements

    def _baseline_exists(self, repository: str) -> bool:
        try:
            return self.snapshots.exists(repository)
        except StorageError as e:
            msg = f"Checking for stored benchmarks of {repository!r} failed: {e}"
            raise BaselineReadFailure(msg) from e

    def _read_baseline(self, repository: str) -> MeasurementSet:
        try:
            return MeasurementSet(self.snapshots.read_latest(repository))
        except StorageError as e:
            msg = f"Retrieving `before` benchmarks for {repository!r} failed: {e}"
            raise BaselineReadFailure(msg) from e

    def _persist(self, repository: str, uploads: list[tuple[str, bytes]], public: bool) -> dict[str, str]:
        """Write snapshots in order; stop at the first failure without undoing earlier writes."""
        urls: dict[str, str] = {}
        for variant, data in uploads:
            try:
                urls[variant] = self.snapshots.put(repository, variant, data, public)
            except StorageError as e:
                raise PersistFailure(SnapshotKey(repository, variant).path, urls, str(e)) from e
            logger.debug("Stored %s", SnapshotKey(repository, variant))
        return urls


@dataclass
class BenchmarkRequest:
    """Inbound request to benchmark a repository and e-mail the report."""

    git_repo_url: str
    alert_emails: list[str] = field(default_factory=list)
    public: bool = False
    secret: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> "BenchmarkRequest":
        """
        Build a request from a decoded JSON body.

        Raises:
            InvalidRequestError: If fields are missing or of the wrong type
        """
        if not isinstance(data, dict):
            msg = "Request body must be a JSON object"
            raise InvalidRequestError(msg)

        emails = data.get("alert_emails", [])
        if not isinstance(emails, list) or not all(isinstance(e, str) for e in emails):
            msg = "alert_emails must be a list of strings"
            raise InvalidRequestError(msg)
        public = data.get("public", False)
        if not isinstance(public, bool):
            msg = "public must be a boolean"
            raise InvalidRequestError(msg)
        repo = data.get("git_repo_url", "")
        secret = data.get("secret", "")
        if not isinstance(repo, str) or not isinstance(secret, str):
            msg = "git_repo_url and secret must be strings"
            raise InvalidRequestError(msg)

        request = cls(git_repo_url=repo, alert_emails=emails, public=public, secret=secret)
        request.validate()
        return request

    def validate(self) -> None:
        """Check the repository reference and recipient list, normalising both."""
        self.git_repo_url = validate_repository(self.git_repo_url)
        recipients = [e.strip() for e in self.alert_emails]
        if not recipients or any(not e for e in recipients):
            msg = "alert_emails must be a non-empty list of non-blank addresses"
            raise InvalidRequestError(msg)
        self.alert_emails = recipients


class SecretVerifier:
    """Check request secrets against per-repository shared secrets."""

    def __init__(self, secrets: dict[str, str] | None = None):
        self.secrets = secrets or {}

    def verify(self, repository: str, secret: str) -> None:
        """
        Raises:
            AuthenticationError: If a secret is configured for the repository and does not match
        """
        expected = self.secrets.get(repository)
        if expected is None:
            logger.warning("No shared secret configured for %r; accepting unauthenticated request", repository)
            return
        if not hmac.compare_digest(expected.encode("utf-8"), (secret or "").encode("utf-8")):
            msg = f"Invalid secret for {repository!r}"
            raise AuthenticationError(msg)


class BenchmarkService:
    """Validate a request, run the pipeline and e-mail the report."""

    def __init__(self, orchestrator: PipelineOrchestrator, notifier: Notifier, app_email: str, verifier: SecretVerifier | None = None):
        self.orchestrator = orchestrator
        self.notifier = notifier
        self.app_email = app_email
        self.verifier = verifier or SecretVerifier()

    def benchmark_and_email(self, request: BenchmarkRequest, cancel_event: threading.Event | None = None) -> PipelineResult:
        """
        Run the pipeline for a request and notify its recipients.

        No e-mail is sent when no change was detected.

        Raises:
            InvalidRequestError: If the request is malformed
            AuthenticationError: If the secret does not match
            NotificationFailure: If delivery failed after snapshots were stored
            BencherError: Any pipeline failure
        """
        request.validate()
        self.verifier.verify(request.git_repo_url, request.secret)

        result = self.orchestrator.run(request.git_repo_url, request.public, cancel_event)
        if result.no_change:
            return result

        subject = f"Benchmarks for {request.git_repo_url}"
        try:
            self.notifier.send(self.app_email, request.alert_emails, subject, render_email(result))
        except NotificationError as e:
            msg = f"Sending benchmark report failed: {e}"
            raise NotificationFailure(msg, result) from e
        return result


def build_orchestrator(config: BencherConfig, runner: MeasurementRunner | None = None) -> PipelineOrchestrator:
    """Wire a PipelineOrchestrator with the local store and U-test comparator."""
    blob_store = LocalBlobStore(config.storage_root, public_base_url=config.public_base_url)
    return PipelineOrchestrator(
        runner=runner or GoBenchmarkRunner(config.source_root, count=config.bench_count, timeout=config.bench_timeout),
        snapshots=SnapshotStore(blob_store, config.bucket),
        change_filter=ChangeFilter(UTestComparator()),
        advance_baseline_on_no_change=config.advance_baseline_on_no_change,
    )


def build_service(config: BencherConfig, runner: MeasurementRunner | None = None) -> BenchmarkService:
    """Wire a BenchmarkService from configuration."""
    return BenchmarkService(
        orchestrator=build_orchestrator(config, runner),
        notifier=PostmarkNotifier(config.postmark_server_token),
        app_email=config.app_email,
        verifier=SecretVerifier(load_repository_secrets(config.secrets_file)),
    )
