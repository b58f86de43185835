"""Secretless credential selection.

The engine only authenticates with identities that carry no secret:
- Managed identity (system- or user-assigned) when running in Azure
- The local Azure CLI login for interactive use on a workstation

SECURITY INVARIANTS:
1. Client secrets, certificates and passwords must never be present in the
   environment; startup is refused if they are
2. Credentials are only ever obtained through get_credential()
"""

from __future__ import annotations

import logging
import os

from azure.core.credentials import TokenCredential
from azure.identity import AzureCliCredential, ManagedIdentityCredential

logger = logging.getLogger(__name__)

# Environment variables that indicate credential leakage
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)

SECRETLESS_VIOLATION_MESSAGE = """\
Secretless credential check failed: {env_var} is set.

ruledrift authenticates with a managed identity or an Azure CLI login only.
Unset every credential secret from the environment and retry. For local
runs, sign in with `az login` and set RULEDRIFT_USE_AZURE_CLI=true.
"""


class SecretlessViolationError(Exception):
    """Raised when a credential secret is present in the environment.

    Fatal: the run must not proceed.
    """

    pass


def enforce_secretless_architecture() -> None:
    """Refuse to run when credential secrets are present in the environment.

    Raises:
        SecretlessViolationError: If any forbidden variable is set.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            logger.critical(
                "Secretless architecture violation",
                extra={
                    "security_event": "credential_detected",
                    "env_var": env_var,
                    "action": "startup_blocked",
                },
            )
            raise SecretlessViolationError(SECRETLESS_VIOLATION_MESSAGE.format(env_var=env_var))

    logger.debug(
        "Secretless architecture verified",
        extra={"security_event": "secretless_verified"},
    )


def get_credential(
    client_id: str | None = None,
    use_azure_cli: bool = False,
) -> TokenCredential:
    """Return a secretless credential after verifying the environment.

    Args:
        client_id: Client ID of a user-assigned managed identity. If None,
            the system-assigned identity is used.
        use_azure_cli: Use the local `az login` session instead of a
            managed identity.

    Raises:
        SecretlessViolationError: If credential environment variables detected.
    """
    enforce_secretless_architecture()

    if use_azure_cli:
        logger.info("Using Azure CLI credential", extra={"credential_type": "AzureCli"})
        return AzureCliCredential()

    if client_id:
        logger.info(
            "Using user-assigned managed identity",
            extra={
                "credential_type": "ManagedIdentity",
                "client_id": client_id[:8] + "..." if len(client_id) > 8 else client_id,
            },
        )
        return ManagedIdentityCredential(client_id=client_id)

    logger.info(
        "Using system-assigned managed identity",
        extra={"credential_type": "ManagedIdentity"},
    )
    return ManagedIdentityCredential()
