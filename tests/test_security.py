"""Tests for secretless architecture enforcement and audit logging.

These tests verify that the responder refuses to run with credential
environment variables and only hands out managed identity credentials.
"""

from __future__ import annotations

import logging
import os
from unittest import mock

import pytest

from bastion_responder.security import (
    FORBIDDEN_CREDENTIAL_ENV_VARS,
    SecretlessViolationError,
    enforce_secretless_architecture,
    get_managed_identity_credential,
    log_security_audit_event,
)


class TestSecretlessEnforcement:
    """Tests for secretless architecture enforcement."""

    def test_clean_environment_passes(self) -> None:
        """Test that enforcement passes with no credential env vars."""
        with mock.patch.dict(os.environ, {}, clear=True):
            enforce_secretless_architecture()

    @pytest.mark.parametrize("env_var", FORBIDDEN_CREDENTIAL_ENV_VARS)
    def test_forbidden_env_var_raises(self, env_var: str) -> None:
        """Test that each forbidden env var raises SecretlessViolationError."""
        with mock.patch.dict(os.environ, {env_var: "some-secret-value"}):
            with pytest.raises(SecretlessViolationError) as exc_info:
                enforce_secretless_architecture()

            assert env_var in str(exc_info.value)

    def test_empty_value_is_ignored(self) -> None:
        """Test that a forbidden variable set to an empty string passes."""
        with mock.patch.dict(os.environ, {"AZURE_CLIENT_SECRET": ""}, clear=True):
            enforce_secretless_architecture()


class TestGetManagedIdentityCredential:
    """Tests for managed identity credential getter."""

    def test_rejects_secret_env_var(self) -> None:
        """Test that get_managed_identity_credential enforces secretless."""
        with mock.patch.dict(os.environ, {"AZURE_CLIENT_SECRET": "secret"}):
            with pytest.raises(SecretlessViolationError):
                get_managed_identity_credential()

    @mock.patch("bastion_responder.security.ManagedIdentityCredential")
    def test_returns_system_assigned_by_default(self, mock_credential_class: mock.Mock) -> None:
        """Test that system-assigned MI is used when no client_id."""
        with mock.patch.dict(os.environ, {}, clear=True):
            result = get_managed_identity_credential()

        mock_credential_class.assert_called_once_with()
        assert result is mock_credential_class.return_value

    @mock.patch("bastion_responder.security.ManagedIdentityCredential")
    def test_returns_user_assigned_with_client_id(self, mock_credential_class: mock.Mock) -> None:
        """Test that user-assigned MI is used when client_id provided."""
        with mock.patch.dict(os.environ, {}, clear=True):
            result = get_managed_identity_credential(client_id="test-client-id-12345")

        mock_credential_class.assert_called_once_with(client_id="test-client-id-12345")
        assert result is mock_credential_class.return_value


class TestSecurityAuditEvent:
    """Tests for structured security audit records."""

    def test_audit_record_fields(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test that audit records carry the structured fields."""
        with caplog.at_level(logging.INFO, logger="bastion_responder.security"):
            log_security_audit_event(
                event_type="role_granted",
                principal_id="principal-1",
                target_resource="/subscriptions/s/resourceGroups/rg",
                action="Virtual Machine Administrator Login",
                result="success",
                correlation_id="corr-1",
                caller="admin@example.com",
            )

        record = caplog.records[-1]
        assert record.getMessage() == "Security audit: role_granted"
        assert record.security_audit is True
        assert record.principal_id == "principal-1"
        assert record.correlation_id == "corr-1"
        assert record.caller == "admin@example.com"


class TestForbiddenEnvVarsList:
    """Tests for the forbidden environment variables list."""

    def test_contains_secret_and_password_credentials(self) -> None:
        """Test that secret, certificate and password credentials are forbidden."""
        for name in (
            "AZURE_CLIENT_SECRET",
            "AZURE_CLIENT_CERTIFICATE_PATH",
            "AZURE_USERNAME",
            "AZURE_PASSWORD",
        ):
            assert name in FORBIDDEN_CREDENTIAL_ENV_VARS

    def test_list_is_tuple(self) -> None:
        """Test that the list is immutable (tuple, not list)."""
        assert isinstance(FORBIDDEN_CREDENTIAL_ENV_VARS, tuple)
