"""Action resolution for role change events.

Skips are values, not errors: most roles are intentionally unmonitored.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from .events import ChangeKind, RoleChangeEvent
from .registry import Registry, RoleActionRule

logger = logging.getLogger(__name__)


class SkipReason(str, Enum):
    """Why a valid event triggers no actions."""

    ROLE_NOT_CONFIGURED = "RoleNotConfigured"
    RESOURCE_TYPE_UNSUPPORTED = "ResourceTypeUnsupported"
    NO_ACTIONS_CONFIGURED = "NoActionsConfigured"


@dataclass(frozen=True)
class Skip:
    """Resolver verdict for an event that needs no remediation."""

    reason: SkipReason
    message: str
    rule: RoleActionRule | None = None


@dataclass(frozen=True)
class ResolvedActions:
    """Ordered actions to execute for an event.

    Attributes:
        rule: The matched registry rule.
        actions: Enabled action names in registry-declared order.
        disabled: Actions configured for the change kind but disabled.
    """

    rule: RoleActionRule
    actions: tuple[str, ...]
    disabled: tuple[str, ...] = field(default_factory=tuple)


def resolve(event: RoleChangeEvent, registry: Registry) -> ResolvedActions | Skip:
    """Determine which actions to run for an event.

    Args:
        event: Normalized role change event.
        registry: Loaded role-action registry.

    Returns:
        ResolvedActions in execution order, or a Skip.
    """
    rule = registry.lookup(event.role_id)
    if rule is None:
        return Skip(
            reason=SkipReason.ROLE_NOT_CONFIGURED,
            message=f"Role {event.role_id} is not monitored",
        )

    if not event.resource_type_known or event.resource_type not in rule.supported_resource_types:
        return Skip(
            reason=SkipReason.RESOURCE_TYPE_UNSUPPORTED,
            message=(
                f"Resource type '{event.resource_type}' is not supported for role "
                f"'{rule.display_name or rule.role_id}'"
            ),
            rule=rule,
        )

    match event.change_kind:
        case ChangeKind.GRANTED:
            configured = rule.actions_on_grant
        case ChangeKind.REVOKED:
            configured = rule.actions_on_revoke
        case _:
            raise ValueError(f"Unsupported change kind: {event.change_kind}")

    enabled = tuple(name for name in configured if registry.action_settings(name).enabled)
    disabled = tuple(name for name in configured if name not in enabled)

    if disabled:
        logger.info(
            "Disabled actions not scheduled",
            extra={"correlation_id": event.correlation_id, "disabled_actions": list(disabled)},
        )

    if not enabled:
        return Skip(
            reason=SkipReason.NO_ACTIONS_CONFIGURED,
            message=f"No enabled actions configured for {event.change_kind.value} events",
            rule=rule,
        )

    return ResolvedActions(rule=rule, actions=enabled, disabled=disabled)
