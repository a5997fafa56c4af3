"""Credential acquisition for the Azure provider.

Only token-based, secretless credentials are used:
- Managed identity when running inside Azure (system- or user-assigned)
- The signed-in Azure CLI session on a workstation

Client secrets, certificates and passwords in the environment are refused
before any credential object is built, so a plan or apply never runs with
long-lived secrets.
"""

from __future__ import annotations

import logging
import os

from azure.core.credentials import TokenCredential
from azure.identity import AzureCliCredential, ManagedIdentityCredential

from .config import AzureCredentialType

logger = logging.getLogger(__name__)

# Environment variables that indicate secret-based authentication
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)


class SecretlessViolationError(Exception):
    """Raised when secret-based credentials are present in the environment."""

    pass


def enforce_secretless_environment() -> None:
    """Refuse to continue if secret-bearing variables are set.

    Raises:
        SecretlessViolationError: Naming the first offending variable.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            logger.critical(
                "Secret-based credential detected",
                extra={"security_event": "credential_detected", "env_var": env_var},
            )
            raise SecretlessViolationError(
                f"{env_var} is set. Only managed identity or Azure CLI sign-in is supported; "
                "remove the variable and assign an identity with the required RBAC roles."
            )


def get_credential(
    credential_type: AzureCredentialType = AzureCredentialType.MANAGED_IDENTITY,
    client_id: str | None = None,
) -> TokenCredential:
    """Build a secretless credential.

    Args:
        credential_type: Managed identity or Azure CLI.
        client_id: Client id of a user-assigned managed identity. Ignored
            for Azure CLI credentials.

    Raises:
        SecretlessViolationError: If secret-bearing variables are set.
    """
    enforce_secretless_environment()

    if credential_type == AzureCredentialType.AZURE_CLI:
        logger.info("Using Azure CLI credential")
        return AzureCliCredential()

    if client_id:
        logger.info(
            "Using user-assigned managed identity",
            extra={"client_id": client_id[:8] + "..." if len(client_id) > 8 else client_id},
        )
        return ManagedIdentityCredential(client_id=client_id)

    logger.info("Using system-assigned managed identity")
    return ManagedIdentityCredential()
