"""Configuration management with validation.

All bounds are enforced at configuration load time so the operator fails
fast on a bad deployment instead of misbehaving at runtime.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_RESYNC_INTERVAL_SECONDS = 300
MIN_RESYNC_INTERVAL_SECONDS = 60
MAX_RESYNC_INTERVAL_SECONDS = 3600

DEFAULT_WORKER_COUNT = 2
MIN_WORKER_COUNT = 1
MAX_WORKER_COUNT = 64

DEFAULT_EXTERNAL_TIMEOUT_SECONDS = 30
MIN_EXTERNAL_TIMEOUT_SECONDS = 1
MAX_EXTERNAL_TIMEOUT_SECONDS = 600

DEFAULT_SHUTDOWN_TIMEOUT_SECONDS = 30

# Persisted object store; an empty STATE_DIR keeps state in memory only
DEFAULT_STATE_DIR = "/state"

# 0 disables forced re-verification of already synced objects
DEFAULT_DRIFT_VERIFY_INTERVAL_SECONDS = 0

# Per-item exponential backoff for failed reconciles
DEFAULT_RATE_LIMIT_BASE_DELAY_SECONDS = 0.005
DEFAULT_RATE_LIMIT_MAX_DELAY_SECONDS = 1000.0

# Overall token bucket shared by all keys
DEFAULT_RATE_LIMIT_QPS = 10.0
DEFAULT_RATE_LIMIT_BURST = 100

# Immediate re-read-and-retry attempts on optimistic-concurrency conflicts
MAX_CONFLICT_RETRIES = 3

# Security constraints
MAX_MANIFEST_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max manifest file
MAX_TOKEN_FILE_SIZE_BYTES = 4096
MAX_MANIFESTS = 5000

# Input validation patterns
VALID_URL_PATTERN = r"^https?://[^\s/$.?#][^\s]*$"


@dataclass(frozen=True)
class Config:
    """Operator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Automation server
    jenkins_url: str
    jenkins_user: str | None = None
    jenkins_token_file: Path | None = None

    # Declared objects
    manifests_dir: Path = field(default_factory=lambda: Path("/manifests"))

    # Durable object store location; None keeps everything in memory
    state_dir: Path | None = None

    # Worker pool
    worker_count: int = DEFAULT_WORKER_COUNT

    # Timing
    resync_interval_seconds: int = DEFAULT_RESYNC_INTERVAL_SECONDS
    external_timeout_seconds: int = DEFAULT_EXTERNAL_TIMEOUT_SECONDS
    shutdown_timeout_seconds: int = DEFAULT_SHUTDOWN_TIMEOUT_SECONDS
    drift_verify_interval_seconds: int = DEFAULT_DRIFT_VERIFY_INTERVAL_SECONDS

    # Retry behavior
    rate_limit_base_delay_seconds: float = DEFAULT_RATE_LIMIT_BASE_DELAY_SECONDS
    rate_limit_max_delay_seconds: float = DEFAULT_RATE_LIMIT_MAX_DELAY_SECONDS

    # Skip manifests directory existence check (embedded/test use)
    require_manifests_dir: bool = True

    def __post_init__(self) -> None:
        """Validate configuration after initialization.

        All inputs are validated at the boundary (fail-fast).
        """
        import re

        errors: list[str] = []

        if not self.jenkins_url:
            errors.append("JENKINS_URL is required")
        elif not re.match(VALID_URL_PATTERN, self.jenkins_url):
            errors.append(f"JENKINS_URL must be an http(s) URL: {self.jenkins_url}")

        if self.jenkins_token_file is not None and not self.jenkins_user:
            errors.append("JENKINS_USER is required when JENKINS_TOKEN_FILE is set")

        if not (MIN_WORKER_COUNT <= self.worker_count <= MAX_WORKER_COUNT):
            errors.append(
                f"WORKER_COUNT must be between {MIN_WORKER_COUNT} and {MAX_WORKER_COUNT}"
            )

        if not (
            MIN_RESYNC_INTERVAL_SECONDS
            <= self.resync_interval_seconds
            <= MAX_RESYNC_INTERVAL_SECONDS
        ):
            errors.append(
                f"RESYNC_INTERVAL must be between {MIN_RESYNC_INTERVAL_SECONDS} "
                f"and {MAX_RESYNC_INTERVAL_SECONDS} seconds"
            )

        if not (
            MIN_EXTERNAL_TIMEOUT_SECONDS
            <= self.external_timeout_seconds
            <= MAX_EXTERNAL_TIMEOUT_SECONDS
        ):
            errors.append(
                f"EXTERNAL_TIMEOUT must be between {MIN_EXTERNAL_TIMEOUT_SECONDS} "
                f"and {MAX_EXTERNAL_TIMEOUT_SECONDS} seconds"
            )

        if self.shutdown_timeout_seconds < 0:
            errors.append("SHUTDOWN_TIMEOUT cannot be negative")

        if self.drift_verify_interval_seconds < 0:
            errors.append("DRIFT_VERIFY_INTERVAL cannot be negative")

        if self.rate_limit_base_delay_seconds <= 0:
            errors.append("RATE_LIMIT_BASE_DELAY must be positive")
        elif self.rate_limit_max_delay_seconds < self.rate_limit_base_delay_seconds:
            errors.append("RATE_LIMIT_MAX_DELAY must not be lower than RATE_LIMIT_BASE_DELAY")

        if self.require_manifests_dir and not self.manifests_dir.exists():
            errors.append(f"Manifests directory does not exist: {self.manifests_dir}")

        if self.state_dir is not None and self.state_dir.exists() and not self.state_dir.is_dir():
            errors.append(f"STATE_DIR is not a directory: {self.state_dir}")

        if self.jenkins_token_file is not None and not self.jenkins_token_file.exists():
            errors.append(f"Token file does not exist: {self.jenkins_token_file}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            JENKINS_URL: Base URL of the automation server (required)
            JENKINS_USER: User for API token authentication
            JENKINS_TOKEN_FILE: Path to a mounted file holding the API token
            MANIFESTS_DIR: Path to YAML manifests (default: /manifests)
            STATE_DIR: Directory for the persisted object store (default: /state;
                empty keeps state in memory only)
            WORKER_COUNT: Concurrent reconcile workers (default: 2)
            RESYNC_INTERVAL: Seconds between full resyncs (default: 300)
            EXTERNAL_TIMEOUT: Deadline for a single external call (default: 30)
            SHUTDOWN_TIMEOUT: Seconds to wait for in-flight items (default: 30)
            DRIFT_VERIFY_INTERVAL: Re-verify synced objects older than this
                many seconds; 0 disables (default: 0)
            RATE_LIMIT_BASE_DELAY: First retry delay in seconds (default: 0.005)
            RATE_LIMIT_MAX_DELAY: Retry delay cap in seconds (default: 1000)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        token_file = os.environ.get("JENKINS_TOKEN_FILE")
        state_dir = os.environ.get("STATE_DIR", DEFAULT_STATE_DIR)

        return cls(
            jenkins_url=os.environ.get("JENKINS_URL", ""),
            jenkins_user=os.environ.get("JENKINS_USER") or None,
            jenkins_token_file=Path(token_file) if token_file else None,
            manifests_dir=Path(os.environ.get("MANIFESTS_DIR", "/manifests")),
            state_dir=Path(state_dir) if state_dir else None,
            worker_count=get_int("WORKER_COUNT", DEFAULT_WORKER_COUNT),
            resync_interval_seconds=get_int("RESYNC_INTERVAL", DEFAULT_RESYNC_INTERVAL_SECONDS),
            external_timeout_seconds=get_int(
                "EXTERNAL_TIMEOUT", DEFAULT_EXTERNAL_TIMEOUT_SECONDS
            ),
            shutdown_timeout_seconds=get_int(
                "SHUTDOWN_TIMEOUT", DEFAULT_SHUTDOWN_TIMEOUT_SECONDS
            ),
            drift_verify_interval_seconds=get_int(
                "DRIFT_VERIFY_INTERVAL", DEFAULT_DRIFT_VERIFY_INTERVAL_SECONDS
            ),
            rate_limit_base_delay_seconds=get_float(
                "RATE_LIMIT_BASE_DELAY", DEFAULT_RATE_LIMIT_BASE_DELAY_SECONDS
            ),
            rate_limit_max_delay_seconds=get_float(
                "RATE_LIMIT_MAX_DELAY", DEFAULT_RATE_LIMIT_MAX_DELAY_SECONDS
            ),
        )
