#!/usr/bin/env python3
"""
bencher_config.py - Configuration for the bencher pipeline

Configuration is read once from environment variables (which also serve as
command-line defaults) and then passed explicitly to every component.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_PORT = 7788
DEFAULT_BUCKET = "census-demos"
DEFAULT_BENCH_TIMEOUT = 1800
DEFAULT_BENCH_COUNT = 5


class ConfigError(Exception):
    """Raised when configuration values are invalid."""


def env_bool(name: str, default: bool = False) -> bool:
    """Read a boolean flag from the environment ("1", "true", "yes", "on")."""
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


def default_source_root() -> Path:
    """Directory that holds checked-out repositories: $GOPATH/src, else ~/go/src."""
    gopath = os.getenv("GOPATH", "").split(os.pathsep)[0]
    if gopath:
        return Path(gopath) / "src"
    return Path.home() / "go" / "src"


@dataclass
class BencherConfig:
    """Settings shared by the server, the CLI and the pipeline."""

    bucket: str = DEFAULT_BUCKET
    app_email: str = ""
    postmark_server_token: str = ""
    storage_root: Path = field(default_factory=lambda: Path("bencher-storage"))
    public_base_url: str | None = None
    source_root: Path = field(default_factory=default_source_root)
    bench_timeout: int = DEFAULT_BENCH_TIMEOUT
    bench_count: int = DEFAULT_BENCH_COUNT
    secrets_file: Path | None = None
    advance_baseline_on_no_change: bool = False
    port: int = DEFAULT_PORT

    @classmethod
    def from_env(cls) -> "BencherConfig":
        """Build a configuration from BENCHER_* / BENCHMARK_* environment variables."""
        secrets_file = os.getenv("BENCHER_SECRETS_FILE")
        source_root = os.getenv("BENCHER_SOURCE_ROOT")
        try:
            return cls(
                bucket=os.getenv("BENCHER_BUCKET", DEFAULT_BUCKET),
                app_email=os.getenv("BENCHER_APP_EMAIL", ""),
                postmark_server_token=os.getenv("BENCHER_POSTMARK_SERVER_TOKEN", ""),
                storage_root=Path(os.getenv("BENCHER_STORAGE_ROOT", "bencher-storage")),
                public_base_url=os.getenv("BENCHER_PUBLIC_BASE_URL") or None,
                source_root=Path(source_root) if source_root else default_source_root(),
                bench_timeout=int(os.getenv("BENCHMARK_TIMEOUT", str(DEFAULT_BENCH_TIMEOUT))),
                bench_count=int(os.getenv("BENCHMARK_COUNT", str(DEFAULT_BENCH_COUNT))),
                secrets_file=Path(secrets_file) if secrets_file else None,
                advance_baseline_on_no_change=env_bool("BENCHER_ADVANCE_ON_NO_CHANGE"),
                port=int(os.getenv("BENCHER_PORT", str(DEFAULT_PORT))),
            )
        except ValueError as e:
            msg = f"Invalid numeric setting in environment: {e}"
            raise ConfigError(msg) from e


def load_repository_secrets(path: Path | None) -> dict[str, str]:
    """
    Load the per-repository shared secrets.

    Args:
        path: JSON file mapping repository reference to secret, or None

    Returns:
        Mapping of repository reference to secret (empty when path is None)

    Raises:
        ConfigError: If the file cannot be read or is not a JSON object of strings
    """
    if path is None:
        return {}
    try:
        with path.open(encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        msg = f"Cannot load secrets file {path}: {e}"
        raise ConfigError(msg) from e

    if not isinstance(data, dict) or not all(isinstance(k, str) and isinstance(v, str) for k, v in data.items()):
        msg = f"Secrets file {path} must map repository names to secret strings"
        raise ConfigError(msg)
    return data
