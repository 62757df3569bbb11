"""Main entry point for the Jenkins sync operator.

Startup order:
1. Structured logging
2. Credential hygiene: no inline tokens (exit 2 on violation)
3. Configuration from the environment (exit 1 on error)
4. Object store load from STATE_DIR (exit 1 on an unreadable state file)
5. Initial manifest apply (exit 1 on invalid manifests)
6. Controller run until SIGTERM / SIGINT
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime

from .config import Config, ConfigurationError
from .controller import CacheSyncError, Controller
from .events import EventRecorder
from .jenkins import JenkinsClient
from .manifests import ManifestLoadError, ManifestSource
from .security import (
    CredentialViolationError,
    TokenFileError,
    enforce_no_inline_credentials,
    log_security_audit_event,
    read_token_file,
)
from .store import (
    STATE_FILE_NAME,
    FileObjectStore,
    InMemoryObjectStore,
    PersistenceError,
    StoreError,
)

# Standard LogRecord attributes; everything else came in through ``extra``
_RESERVED_LOG_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_LOG_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output for production."""
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    if any(isinstance(h.formatter, JsonFormatter) for h in root_logger.handlers):
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    # Reduce noise from the HTTP stack
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)


def build_jenkins_client(config: Config) -> JenkinsClient:
    """Create the Jenkins client, reading the API token from its file.

    Raises:
        TokenFileError: If the token file cannot be used.
    """
    token = None
    if config.jenkins_token_file is not None:
        token = read_token_file(config.jenkins_token_file)
    return JenkinsClient(
        config.jenkins_url,
        user=config.jenkins_user,
        token=token,
        timeout_seconds=config.external_timeout_seconds,
    )


def build_object_store(config: Config) -> InMemoryObjectStore:
    """Open the persisted object store, or an in-memory one without STATE_DIR.

    Raises:
        PersistenceError: If the state directory or file cannot be used.
    """
    if config.state_dir is None:
        logging.getLogger(__name__).warning(
            "STATE_DIR is empty; finalizers and sync state are lost on restart"
        )
        return InMemoryObjectStore()

    try:
        config.state_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise PersistenceError(f"Cannot create state directory {config.state_dir}: {e}") from e
    return FileObjectStore(config.state_dir / STATE_FILE_NAME)


async def main(config: Config | None = None, worker_count: int | None = None) -> int:
    """Run the operator.

    Args:
        config: Pre-built configuration; loaded from the environment if None.
        worker_count: Overrides the configured worker count.

    Returns:
        Exit code (0 for success, 1 for configuration errors, 2 for
        security violations).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        enforce_no_inline_credentials()
    except CredentialViolationError as e:
        # SECURITY: Credential in environment - fatal security error
        logger.critical(
            "Security violation: credentials detected in environment",
            extra={"error": str(e)},
        )
        return 2

    if config is None:
        try:
            config = Config.from_env()
        except ConfigurationError as e:
            logger.error("Configuration error", extra={"error": str(e)})
            return 1

    logger.info(
        "Starting Jenkins sync operator",
        extra={
            "jenkins_url": config.jenkins_url,
            "manifests_dir": str(config.manifests_dir),
            "state_dir": str(config.state_dir) if config.state_dir else None,
            "workers": worker_count or config.worker_count,
            "resync_interval_seconds": config.resync_interval_seconds,
        },
    )

    try:
        external = build_jenkins_client(config)
    except TokenFileError as e:
        logger.error("Cannot load API token", extra={"error": str(e)})
        return 1
    log_security_audit_event(
        "auth",
        target=config.jenkins_url,
        action="configure_client",
        result="token_file" if config.jenkins_token_file else "anonymous",
    )

    try:
        store = build_object_store(config)
    except StoreError as e:
        logger.error("Cannot open object store", extra={"error": str(e)})
        external.close()
        return 1

    source = ManifestSource(store, config.manifests_dir)
    try:
        source.sync()
    except (ManifestLoadError, StoreError) as e:
        logger.error(
            "Manifest loading failed",
            extra={"error": str(e), "manifests_dir": str(config.manifests_dir)},
        )
        external.close()
        return 1

    controller = Controller(
        store,
        external,
        config,
        recorder=EventRecorder(),
        before_resync=source.sync,
    )

    # Set up signal handlers for graceful shutdown
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        await controller.run(worker_count, stop_event)
    except CacheSyncError as e:
        logger.error("Controller stopped before caches synced", extra={"error": str(e)})
        return 1
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1
    finally:
        external.close()

    logger.info("Operator stopped")
    return 0


def run() -> None:
    """Entry point for the operator process."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
