"""Tests for credential hygiene.

These tests verify that the operator refuses inline credentials and only
reads the API token from a size-limited file.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from unittest import mock

import pytest

from jobsync.config import MAX_TOKEN_FILE_SIZE_BYTES
from jobsync.security import (
    FORBIDDEN_CREDENTIAL_ENV_VARS,
    CredentialViolationError,
    TokenFileError,
    enforce_no_inline_credentials,
    log_security_audit_event,
    read_token_file,
)


class TestInlineCredentials:
    """Tests for inline credential rejection."""

    def test_clean_environment_passes(self) -> None:
        """Test that enforcement passes with no credential env vars."""
        with mock.patch.dict(os.environ, {}, clear=True):
            # Should not raise
            enforce_no_inline_credentials()

    @pytest.mark.parametrize("env_var", FORBIDDEN_CREDENTIAL_ENV_VARS)
    def test_forbidden_env_var_raises(self, env_var: str) -> None:
        """Test that each forbidden env var raises CredentialViolationError."""
        with mock.patch.dict(os.environ, {env_var: "some-secret-value"}):
            with pytest.raises(CredentialViolationError) as exc_info:
                enforce_no_inline_credentials()

            assert env_var in str(exc_info.value)
            assert "SECURITY VIOLATION" in str(exc_info.value)

    def test_secret_value_not_in_message(self) -> None:
        """Test that the credential itself never appears in the error."""
        with mock.patch.dict(os.environ, {"JENKINS_TOKEN": "hunter2"}):
            with pytest.raises(CredentialViolationError) as exc_info:
                enforce_no_inline_credentials()

            assert "hunter2" not in str(exc_info.value)

    def test_empty_value_ignored(self) -> None:
        """Test that an empty variable does not count as a credential."""
        with mock.patch.dict(os.environ, {"JENKINS_TOKEN": ""}, clear=True):
            enforce_no_inline_credentials()

    def test_token_file_variable_allowed(self, tmp_path: Path) -> None:
        """Test that pointing at a token file is the supported path."""
        with mock.patch.dict(
            os.environ, {"JENKINS_TOKEN_FILE": str(tmp_path / "token")}, clear=True
        ):
            enforce_no_inline_credentials()


class TestReadTokenFile:
    """Tests for reading the API token from a file."""

    def test_reads_and_strips(self, tmp_path: Path) -> None:
        token_file = tmp_path / "token"
        token_file.write_text("  abc123\n")

        assert read_token_file(token_file) == "abc123"

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(TokenFileError) as exc_info:
            read_token_file(tmp_path / "missing")

        assert "Failed to stat" in str(exc_info.value)

    def test_empty_file(self, tmp_path: Path) -> None:
        token_file = tmp_path / "token"
        token_file.write_text("\n")

        with pytest.raises(TokenFileError) as exc_info:
            read_token_file(token_file)

        assert "empty" in str(exc_info.value)

    def test_oversized_file(self, tmp_path: Path) -> None:
        token_file = tmp_path / "token"
        token_file.write_text("x" * (MAX_TOKEN_FILE_SIZE_BYTES + 1))

        with pytest.raises(TokenFileError) as exc_info:
            read_token_file(token_file)

        assert "maximum size" in str(exc_info.value)

    def test_token_not_logged(self, tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
        token_file = tmp_path / "token"
        token_file.write_text("abc123")

        with caplog.at_level(logging.INFO, logger="jobsync.security"):
            read_token_file(token_file)

        assert "abc123" not in caplog.text
        assert all("abc123" not in str(r.__dict__) for r in caplog.records)


class TestAuditEvents:
    """Tests for security audit logging."""

    def test_audit_event_structured(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.INFO, logger="jobsync.security"):
            log_security_audit_event(
                "auth", target="http://jenkins", action="configure_client", result="token_file"
            )

        record = caplog.records[-1]
        assert record.security_audit is True  # type: ignore[attr-defined]
        assert record.event_type == "auth"  # type: ignore[attr-defined]
        assert record.result == "token_file"  # type: ignore[attr-defined]
