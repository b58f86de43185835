"""Tests for secretless credential selection.

These tests verify that no credential is ever created while a secret
sits in the environment, and that the right secretless credential is
chosen otherwise.
"""

from __future__ import annotations

import os
from unittest import mock

import pytest

from ruledrift.security import (
    FORBIDDEN_CREDENTIAL_ENV_VARS,
    SecretlessViolationError,
    enforce_secretless_architecture,
    get_credential,
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
        with mock.patch.dict(os.environ, {env_var: "some-secret-value"}, clear=True):
            with pytest.raises(SecretlessViolationError) as exc_info:
                enforce_secretless_architecture()

        assert env_var in str(exc_info.value)
        assert "some-secret-value" not in str(exc_info.value)

    def test_empty_value_ignored(self) -> None:
        """Test that an exported but empty variable is not a violation."""
        with mock.patch.dict(os.environ, {"AZURE_CLIENT_SECRET": ""}, clear=True):
            enforce_secretless_architecture()

    def test_message_explains_fix(self) -> None:
        """Test that the error tells the operator how to authenticate instead."""
        with mock.patch.dict(os.environ, {"AZURE_PASSWORD": "pw"}, clear=True):
            with pytest.raises(SecretlessViolationError) as exc_info:
                enforce_secretless_architecture()

        assert "az login" in str(exc_info.value)
        assert "RULEDRIFT_USE_AZURE_CLI" in str(exc_info.value)


class TestGetCredential:
    """Tests for credential selection."""

    def test_rejects_secret_env_var(self) -> None:
        """Test that get_credential enforces secretless before creating anything."""
        with mock.patch.dict(os.environ, {"AZURE_CLIENT_SECRET": "secret"}, clear=True):
            with mock.patch("ruledrift.security.ManagedIdentityCredential") as mi:
                with pytest.raises(SecretlessViolationError):
                    get_credential()

        mi.assert_not_called()

    @mock.patch("ruledrift.security.ManagedIdentityCredential")
    def test_system_assigned_by_default(self, mock_credential_class: mock.Mock) -> None:
        """Test that system-assigned MI is used when no client_id."""
        with mock.patch.dict(os.environ, {}, clear=True):
            result = get_credential()

        mock_credential_class.assert_called_once_with()
        assert result is mock_credential_class.return_value

    @mock.patch("ruledrift.security.ManagedIdentityCredential")
    def test_user_assigned_with_client_id(self, mock_credential_class: mock.Mock) -> None:
        """Test that user-assigned MI is used when client_id provided."""
        client_id = "11111111-2222-3333-4444-555555555555"

        with mock.patch.dict(os.environ, {}, clear=True):
            result = get_credential(client_id=client_id)

        mock_credential_class.assert_called_once_with(client_id=client_id)
        assert result is mock_credential_class.return_value

    @mock.patch("ruledrift.security.ManagedIdentityCredential")
    @mock.patch("ruledrift.security.AzureCliCredential")
    def test_azure_cli(self, cli_class: mock.Mock, mi_class: mock.Mock) -> None:
        """Test that the CLI login is used when requested, even with a client_id."""
        with mock.patch.dict(os.environ, {}, clear=True):
            result = get_credential(client_id="abc", use_azure_cli=True)

        cli_class.assert_called_once_with()
        mi_class.assert_not_called()
        assert result is cli_class.return_value


class TestForbiddenEnvVarsList:
    """Tests for the forbidden environment variables list."""

    def test_contains_secret_and_certificate_credentials(self) -> None:
        """Test that secret and certificate credentials are forbidden."""
        assert "AZURE_CLIENT_SECRET" in FORBIDDEN_CREDENTIAL_ENV_VARS
        assert "AZURE_CLIENT_CERTIFICATE_PATH" in FORBIDDEN_CREDENTIAL_ENV_VARS
        assert "AZURE_CLIENT_CERTIFICATE_PASSWORD" in FORBIDDEN_CREDENTIAL_ENV_VARS

    def test_contains_password_credentials(self) -> None:
        """Test that password-based credentials are forbidden."""
        assert "AZURE_USERNAME" in FORBIDDEN_CREDENTIAL_ENV_VARS
        assert "AZURE_PASSWORD" in FORBIDDEN_CREDENTIAL_ENV_VARS

    def test_client_id_allowed(self) -> None:
        """Test that a managed identity client ID is not treated as a secret."""
        assert "AZURE_CLIENT_ID" not in FORBIDDEN_CREDENTIAL_ENV_VARS
