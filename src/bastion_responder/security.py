"""Managed-identity-only credentials and security audit logging.

The responder authenticates to Azure exclusively through a managed identity.
Service principal secrets, certificates, or user passwords in the environment
block startup.

SECURITY INVARIANTS:
1. AZURE_CLIENT_SECRET and friends must never be present in the environment
2. ManagedIdentityCredential is the only credential type handed to SDK clients
3. Every remediation performed on behalf of a role change is audit-logged
"""

from __future__ import annotations

import logging
import os

from azure.identity import ManagedIdentityCredential

logger = logging.getLogger(__name__)

# Environment variables that indicate credential leakage
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)

SECRETLESS_VIOLATION_MESSAGE = (
    "Credential environment variable {env_var} is set. The bastion responder "
    "only authenticates with a managed identity: remove the variable, assign a "
    "managed identity to the host, and grant it Network Contributor and Reader "
    "on the managed subscription."
)


class SecretlessViolationError(Exception):
    """Raised when a credential secret is found in the environment.

    Fatal: the responder must not touch Azure when this is raised.
    """

    pass


def enforce_secretless_architecture() -> None:
    """Refuse to start when credential secrets are present in the environment.

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
        extra={"security_event": "secretless_verified", "credential_type": "ManagedIdentity"},
    )


def get_managed_identity_credential(
    client_id: str | None = None,
) -> ManagedIdentityCredential:
    """Get a ManagedIdentityCredential after verifying the environment.

    Args:
        client_id: Client ID of a user-assigned identity. None selects the
                   system-assigned identity.

    Raises:
        SecretlessViolationError: If credential environment variables detected.
    """
    enforce_secretless_architecture()

    if client_id:
        logger.info(
            "Using user-assigned managed identity",
            extra={"client_id": client_id[:8] + "..." if len(client_id) > 8 else client_id},
        )
        return ManagedIdentityCredential(client_id=client_id)

    logger.info("Using system-assigned managed identity")
    return ManagedIdentityCredential()


def log_security_audit_event(
    event_type: str,
    principal_id: str,
    target_resource: str | None = None,
    action: str | None = None,
    result: str | None = None,
    correlation_id: str | None = None,
    caller: str | None = None,
) -> None:
    """Log a security-relevant audit event with structured fields for SIEM ingestion.

    Args:
        event_type: Type of event (role_granted, role_revoked, ...).
        principal_id: Principal the role change applies to.
        target_resource: Scope or resource being acted on.
        action: Action being performed.
        result: Result of the action (success, failure, planned).
        correlation_id: Activity log correlation id.
        caller: Identity that made the role change.
    """
    logger.info(
        f"Security audit: {event_type}",
        extra={
            "security_audit": True,
            "event_type": event_type,
            "principal_id": principal_id,
            "target_resource": target_resource,
            "action": action,
            "result": result,
            "correlation_id": correlation_id,
            "caller": caller,
        },
    )
