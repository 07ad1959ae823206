#!/usr/bin/env python3
"""
bencher_cli.py - Command-line interface for the benchmark pipeline

Usage:
    # Serve the HTTP front end
    bencher serve --port 7788 --bucket my-bucket

    # Run the pipeline once for a checked-out repository and print the result
    bencher run --repo github.com/org/project

    # Compare two stored measurement files locally
    bencher compare before.txt after.txt
"""

import argparse
import json
import logging
import sys
import threading
from dataclasses import replace
from pathlib import Path

try:
    # When executed as a script from scripts/
    from bencher_config import BencherConfig, ConfigError  # type: ignore[no-redef]
    from bencher_server import serve  # type: ignore[no-redef]
    from benchmark_models import MeasurementSet  # type: ignore[no-redef]
    from benchmark_utils import BencherError, BenchmarkRequest, build_orchestrator, build_service, validate_repository  # type: ignore[no-redef]
    from comparison_utils import ChangeFilter, UTestComparator  # type: ignore[no-redef]
    from report_utils import format_html, format_text  # type: ignore[no-redef]
except ModuleNotFoundError:
    # When imported as a module (e.g., scripts.bencher_cli)
    from scripts.bencher_config import BencherConfig, ConfigError  # type: ignore[no-redef]
    from scripts.bencher_server import serve  # type: ignore[no-redef]
    from scripts.benchmark_models import MeasurementSet  # type: ignore[no-redef]
    from scripts.benchmark_utils import BencherError, BenchmarkRequest, build_orchestrator, build_service, validate_repository  # type: ignore[no-redef]
    from scripts.comparison_utils import ChangeFilter, UTestComparator  # type: ignore[no-redef]
    from scripts.report_utils import format_html, format_text  # type: ignore[no-redef]


def create_argument_parser(defaults: BencherConfig) -> argparse.ArgumentParser:
    """Create and configure the argument parser."""
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    common.add_argument("--bucket", default=defaults.bucket, help="Storage bucket for snapshots (from BENCHER_BUCKET env)")
    common.add_argument("--storage-root", type=Path, default=defaults.storage_root, help="Directory holding storage buckets")
    common.add_argument("--public-base-url", default=defaults.public_base_url, help="Base URL under which public snapshots are served")
    common.add_argument("--source-root", type=Path, default=defaults.source_root, help="Directory holding checked-out repositories")
    common.add_argument(
        "--bench-timeout",
        type=int,
        default=defaults.bench_timeout,
        help="Timeout for go test -bench in seconds (default: 1800, from BENCHMARK_TIMEOUT env)",
    )
    common.add_argument("--bench-count", type=int, default=defaults.bench_count, help="Runs per benchmark (-count)")
    common.add_argument(
        "--advance-on-no-change",
        action="store_true",
        default=defaults.advance_baseline_on_no_change,
        help="Store new measurements as baseline even when no change was detected",
    )

    parser = argparse.ArgumentParser(description="Benchmark regression detection pipeline")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    serve_parser = subparsers.add_parser("serve", parents=[common], help="Run the HTTP server")
    serve_parser.add_argument("--host", default="", help="Interface to bind (default: all)")
    serve_parser.add_argument("--port", type=int, default=defaults.port, help="The port to run the server")
    serve_parser.add_argument("--app-email", default=defaults.app_email, help="Sender address of report e-mails")
    serve_parser.add_argument("--secrets-file", type=Path, default=defaults.secrets_file, help="JSON file mapping repositories to secrets")

    run_parser = subparsers.add_parser("run", parents=[common], help="Run the pipeline once")
    run_parser.add_argument("--repo", required=True, help="Repository reference, e.g. github.com/org/project")
    run_parser.add_argument("--public", action="store_true", help="Make stored snapshots publicly accessible")
    run_parser.add_argument("--email", action="append", default=[], help="Recipient of the report (repeatable); omit to skip e-mail")
    run_parser.add_argument("--app-email", default=defaults.app_email, help="Sender address of report e-mails")
    run_parser.add_argument("--secret", default="", help="Shared secret for the repository")
    run_parser.add_argument("--secrets-file", type=Path, default=defaults.secrets_file, help="JSON file mapping repositories to secrets")

    cmp_parser = subparsers.add_parser("compare", help="Compare two measurement files")
    cmp_parser.add_argument("before", type=Path, help="Baseline measurements")
    cmp_parser.add_argument("after", type=Path, help="New measurements")
    cmp_parser.add_argument("--html", action="store_true", help="Print the HTML report instead of text")
    cmp_parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")

    return parser


def config_from_args(args: argparse.Namespace, defaults: BencherConfig) -> BencherConfig:
    """Overlay command-line options on the environment configuration."""
    return replace(
        defaults,
        bucket=args.bucket,
        storage_root=args.storage_root,
        public_base_url=args.public_base_url,
        source_root=args.source_root,
        bench_timeout=args.bench_timeout,
        bench_count=args.bench_count,
        advance_baseline_on_no_change=args.advance_on_no_change,
        app_email=getattr(args, "app_email", defaults.app_email),
        secrets_file=getattr(args, "secrets_file", defaults.secrets_file),
        port=getattr(args, "port", defaults.port),
    )


def execute_compare(args: argparse.Namespace) -> int:
    """Print the changes between two measurement files; exit status 1 when changes exist."""
    try:
        before = MeasurementSet(args.before.read_bytes())
        after = MeasurementSet(args.after.read_bytes())
    except OSError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2

    tables = ChangeFilter(UTestComparator()).compare(before, after)
    if not tables:
        print("No changes detected!")
        return 0

    if args.html:
        print(format_html(tables), end="")
    else:
        print(format_text(tables), end="")
    return 1


def execute_run(args: argparse.Namespace, config: BencherConfig) -> int:
    """Run the pipeline once and print the result as JSON."""
    cancel_event = threading.Event()
    try:
        if args.email:
            request = BenchmarkRequest(git_repo_url=args.repo, alert_emails=args.email, public=args.public, secret=args.secret)
            result = build_service(config).benchmark_and_email(request, cancel_event)
        else:
            result = build_orchestrator(config).run(validate_repository(args.repo), args.public, cancel_event)
    except KeyboardInterrupt:
        cancel_event.set()
        print("❌ Interrupted", file=sys.stderr)
        return 130
    except BencherError as e:
        print(f"❌ {type(e).__name__}: {e}", file=sys.stderr)
        return 1

    print(json.dumps(result.to_dict(), indent=2))
    return 0


def execute_command(args: argparse.Namespace, defaults: BencherConfig) -> int:
    """Execute the selected command based on parsed arguments."""
    if args.command == "compare":
        return execute_compare(args)

    config = config_from_args(args, defaults)
    if args.command == "run":
        return execute_run(args, config)

    if args.command == "serve":
        try:
            service = build_service(config)
        except ConfigError as e:
            print(f"error: {e}", file=sys.stderr)
            return 2
        serve(service, host=args.host, port=config.port)
        return 0

    return 1


def main() -> None:
    """Command-line interface for the benchmark pipeline."""
    try:
        defaults = BencherConfig.from_env()
    except ConfigError as e:
        print(f"error: {e}", file=sys.stderr)
        sys.exit(2)

    parser = create_argument_parser(defaults)
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    # Configure logging
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        sys.exit(execute_command(args, defaults))
    except ConfigError as e:
        print(f"error: {e}", file=sys.stderr)
        sys.exit(2)
    except Exception:
        logging.exception("Fatal error")
        sys.exit(1)


if __name__ == "__main__":
    main()
