"""Canonical role-assignment change events.

Everything downstream of the normalizer works on these types only; the raw
provider payload never leaves normalizer.py.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

# Principal sentinel for revoke events whose payload omits the principal
UNKNOWN_PRINCIPAL = "unknown"


class ChangeKind(str, Enum):
    """The two change kinds a role assignment can undergo."""

    GRANTED = "granted"
    REVOKED = "revoked"


class ResourceType(str, Enum):
    """Known classifications of a role assignment's scope target."""

    VIRTUAL_MACHINE = "compute/virtualMachine"
    RESOURCE_GROUP = "resourceGroup"
    SUBSCRIPTION = "subscription"
    MANAGEMENT_GROUP = "managementGroup"

    @classmethod
    def values(cls) -> frozenset[str]:
        """All known resource type strings."""
        return frozenset(member.value for member in cls)


class RejectionReason(str, Enum):
    """Why a notification does not represent an actionable event."""

    NOT_APPLICABLE = "NotApplicable"
    UNSUPPORTED_OPERATION = "UnsupportedOperation"
    MISSING_ROLE_ID = "MissingRoleId"
    MISSING_PRINCIPAL = "MissingPrincipal"
    INCOMPLETE_OPERATION = "IncompleteOperation"
    MALFORMED_PAYLOAD = "MalformedPayload"


@dataclass(frozen=True)
class Rejection:
    """Normalizer verdict for input that is not an actionable event."""

    reason: RejectionReason
    message: str
    correlation_id: str | None = None


@dataclass(frozen=True)
class RoleChangeEvent:
    """A role assignment that was granted or revoked.

    Attributes:
        role_id: Role definition id as found in the payload. Often a full
            ``/providers/Microsoft.Authorization/roleDefinitions/<guid>`` path;
            registry lookups match it by suffix.
        change_kind: Granted or revoked.
        scope: Resource path the assignment applies to.
        principal_id: Identity the role was granted to or revoked from, or
            ``"unknown"`` on revoke events that do not echo it.
        correlation_id: Provider correlation id, not unique across retries.
        resource_type: Classification of the scope target. One of
            ResourceType's values when ``resource_type_known`` is True,
            otherwise the raw ``namespace/type`` string from the scope.
        resource_type_known: Whether resource_type is in the known set.
        caller: Identity that made the change, when present.
        timestamp: Event time as reported by the provider.
        assignment_id: Resource id of the role assignment itself.
    """

    role_id: str
    change_kind: ChangeKind
    scope: str
    principal_id: str
    correlation_id: str
    resource_type: str
    resource_type_known: bool = True
    caller: str | None = None
    timestamp: str | None = None
    assignment_id: str | None = None

    @property
    def principal_known(self) -> bool:
        return self.principal_id != UNKNOWN_PRINCIPAL

    def log_fields(self) -> dict[str, str]:
        """Fields identifying this event in structured log records."""
        return {
            "correlation_id": self.correlation_id,
            "role_id": self.role_id,
            "change_kind": self.change_kind.value,
            "scope": self.scope,
            "principal_id": self.principal_id,
            "resource_type": self.resource_type,
        }
