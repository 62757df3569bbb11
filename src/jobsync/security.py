"""Credential hygiene for the automation server connection.

The Jenkins API token is only ever read from a mounted file
(``JENKINS_TOKEN_FILE``), never from the environment, where it would leak
through process listings, crash dumps and container inspection.

SECURITY INVARIANTS:
1. Inline credential environment variables block startup
2. The token file is size-limited and must not be empty
3. Token values are never logged
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from .config import MAX_TOKEN_FILE_SIZE_BYTES

logger = logging.getLogger(__name__)

# Environment variables that indicate an inline credential
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "JENKINS_TOKEN",
    "JENKINS_PASSWORD",
    "JENKINS_API_TOKEN",
)

CREDENTIAL_VIOLATION_MESSAGE = """
╔══════════════════════════════════════════════════════════════════════════════╗
║                         SECURITY VIOLATION DETECTED                          ║
╠══════════════════════════════════════════════════════════════════════════════╣
║  This operator only accepts the Jenkins API token from a mounted file.       ║
║                                                                              ║
║  Detected: {env_var}                                                         ║
║                                                                              ║
║  RESOLUTION:                                                                 ║
║  1. Remove the credential environment variable                               ║
║  2. Mount the API token as a secret file                                     ║
║  3. Point JENKINS_TOKEN_FILE at the mounted file                             ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""


class CredentialViolationError(Exception):
    """Raised when a credential is supplied inline.

    This is a fatal security error that prevents operator startup.
    """

    pass


class TokenFileError(Exception):
    """Raised when the token file cannot be used."""

    pass


def enforce_no_inline_credentials() -> None:
    """Refuse to start when a credential is present in the environment.

    Raises:
        CredentialViolationError: If any forbidden variable is set.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            logger.critical(
                "Inline credential detected",
                extra={
                    "security_event": "credential_detected",
                    "env_var": env_var,
                    "action": "startup_blocked",
                },
            )
            raise CredentialViolationError(CREDENTIAL_VIOLATION_MESSAGE.format(env_var=env_var))

    logger.info(
        "No inline credentials found",
        extra={"security_event": "credentials_verified"},
    )


def read_token_file(path: Path) -> str:
    """Read the API token from a mounted file.

    Args:
        path: Path to the token file.

    Returns:
        The token with surrounding whitespace stripped.

    Raises:
        TokenFileError: If the file is missing, too large, unreadable or empty.
    """
    # SECURITY: Check file size before reading
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise TokenFileError(f"Failed to stat token file {path}: {e}") from e

    if file_size > MAX_TOKEN_FILE_SIZE_BYTES:
        raise TokenFileError(
            f"Token file exceeds maximum size of {MAX_TOKEN_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        token = path.read_text(encoding="utf-8").strip()
    except (OSError, UnicodeDecodeError) as e:
        raise TokenFileError(f"Failed to read token file {path}: {e}") from e

    if not token:
        raise TokenFileError(f"Token file is empty: {path}")

    logger.info("Loaded API token from file", extra={"token_file": str(path)})
    return token


def log_security_audit_event(
    event_type: str,
    target: str | None = None,
    action: str | None = None,
    result: str | None = None,
) -> None:
    """Log a security-relevant audit event.

    Args:
        event_type: Type of security event (auth, access, startup, etc.)
        target: Automation server or item being accessed.
        action: Action being performed.
        result: Result of the action (success, failure, denied).
    """
    logger.info(
        f"Security audit: {event_type}",
        extra={
            "security_audit": True,
            "event_type": event_type,
            "target": target,
            "action": action,
            "result": result,
        },
    )
