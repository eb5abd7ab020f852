"""Bastion host create and cleanup handlers.

Parameters (from the role-action document, per action):

    vnetName            VNet to use for resource group / subscription scopes
    vnetResourceGroup   VNet resource group for subscription scopes
    bastionNamePrefix   Bastion name prefix (default: "bas")
    bastionSubnetPrefix CIDR for AzureBastionSubnet if it must be created
    sku                 Bastion SKU (default: "Basic")
    tags                Extra tags for created resources
    deletePublicIp      Delete the managed public IP on cleanup (default: true)
    requireManagedTag   Only delete bastions this responder created (default: true)
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from azure.core.exceptions import ResourceNotFoundError

from ..network import (
    MANAGED_BY_TAG,
    MANAGED_BY_VALUE,
    BastionNetwork,
    NetworkTarget,
    is_managed,
    truncate_name,
)
from ..normalizer import classify_resource_type
from ..results import ActionOutcome
from .base import ActionHandler, HandlerConfigurationError, call_with_retry

if TYPE_CHECKING:
    from ..executor import ExecutionContext
    from ..registry import RoleActionRule

logger = logging.getLogger(__name__)

DEFAULT_BASTION_NAME_PREFIX = "bas"
DEFAULT_BASTION_SKU = "Basic"
VALID_BASTION_SKUS = frozenset({"Developer", "Basic", "Standard", "Premium"})

# Bound on blocking scopes echoed into outcome details
MAX_REPORTED_SCOPES = 10


def _bool_parameter(context: ExecutionContext, key: str, default: bool) -> bool:
    value = context.parameters.get(key, default)
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.lower() in ("true", "1", "yes")
    raise HandlerConfigurationError(f"Parameter '{key}' must be a boolean: {value!r}")


def _provisioning_rules(context: ExecutionContext) -> list[RoleActionRule]:
    """Rules whose grants create a bastion, always including the event's own rule."""
    rules = [context.rule]
    for rule in context.rules:
        if CreateBastionHandler.name in rule.actions_on_grant and rule not in rules:
            rules.append(rule)
    return rules


class _BastionHandler(ActionHandler):
    """Shared target resolution for bastion handlers."""

    def __init__(self, network: BastionNetwork) -> None:
        self._network = network

    def _resolve_target(self, context: ExecutionContext) -> NetworkTarget:
        return call_with_retry(
            lambda: self._network.resolve_target(context.event.scope, context.parameters),
            operation_name="Resolve target network",
        )

    def _find_bastion(self, target: NetworkTarget) -> Any:
        return call_with_retry(
            lambda: self._network.find_bastion(target),
            operation_name="Find bastion host",
        )


class CreateBastionHandler(_BastionHandler):
    """Ensure a bastion host serves the VNet of the granted scope.

    Idempotent: if a bastion already serves the VNet the outcome reports
    ``skipped=True`` and nothing is created.
    """

    name = "create-bastion"

    def _names(self, context: ExecutionContext, target: NetworkTarget) -> tuple[str, str]:
        prefix = context.parameters.get("bastionNamePrefix") or DEFAULT_BASTION_NAME_PREFIX
        bastion_name = truncate_name(f"{prefix}-{target.vnet_name}")
        return bastion_name, truncate_name(f"{bastion_name}-pip")

    def _sku(self, context: ExecutionContext) -> str:
        sku = context.parameters.get("sku") or DEFAULT_BASTION_SKU
        if sku not in VALID_BASTION_SKUS:
            raise HandlerConfigurationError(
                f"sku must be one of {sorted(VALID_BASTION_SKUS)}: {sku}"
            )
        return sku

    def _tags(self, context: ExecutionContext) -> dict[str, str]:
        extra = context.parameters.get("tags") or {}
        if not isinstance(extra, dict):
            raise HandlerConfigurationError("Parameter 'tags' must be a mapping")
        tags = {str(k): str(v) for k, v in extra.items()}
        tags[MANAGED_BY_TAG] = MANAGED_BY_VALUE
        tags["createdForCorrelationId"] = context.event.correlation_id
        return tags

    def execute(self, context: ExecutionContext) -> ActionOutcome:
        sku = self._sku(context)
        target = self._resolve_target(context)

        existing = self._find_bastion(target)
        if existing is not None:
            logger.info(
                "Bastion already serves network, skipping create",
                extra={"vnet_id": target.vnet_id, "bastion_id": existing.id},
            )
            return ActionOutcome.succeeded(
                self.name,
                f"Bastion {existing.name} already serves {target.vnet_name}",
                skipped=True,
                bastion_id=existing.id,
                vnet_id=target.vnet_id,
            )

        bastion_name, public_ip_name = self._names(context, target)
        location = target.location or context.location
        tags = self._tags(context)
        created: list[str] = []

        subnet, subnet_created = call_with_retry(
            lambda: self._network.ensure_bastion_subnet(
                target, context.parameters.get("bastionSubnetPrefix")
            ),
            operation_name="Ensure bastion subnet",
        )
        if subnet_created:
            created.append(subnet.id)

        public_ip, public_ip_created = call_with_retry(
            lambda: self._network.ensure_public_ip(target, public_ip_name, location, tags),
            operation_name="Ensure bastion public IP",
        )
        if public_ip_created:
            created.append(public_ip.id)

        bastion = call_with_retry(
            lambda: self._network.create_bastion(
                target,
                name=bastion_name,
                location=location,
                subnet_id=subnet.id,
                public_ip_id=public_ip.id,
                sku=sku,
                tags=tags,
            ),
            operation_name="Create bastion host",
        )
        created.append(bastion.id)

        return ActionOutcome.succeeded(
            self.name,
            f"Created bastion {bastion_name} for {target.vnet_name}",
            skipped=False,
            bastion_id=bastion.id,
            vnet_id=target.vnet_id,
            resources_created=created,
        )

    def plan(self, context: ExecutionContext) -> ActionOutcome:
        self._sku(context)
        target = self._resolve_target(context)
        existing = self._find_bastion(target)
        if existing is not None:
            return ActionOutcome.succeeded(
                self.name,
                f"Dry run: bastion {existing.name} already serves {target.vnet_name}",
                dry_run=True,
                skipped=True,
                bastion_id=existing.id,
                vnet_id=target.vnet_id,
            )

        bastion_name, public_ip_name = self._names(context, target)
        return ActionOutcome.succeeded(
            self.name,
            f"Dry run: would create bastion {bastion_name} for {target.vnet_name}",
            dry_run=True,
            skipped=False,
            would_create=True,
            bastion_name=bastion_name,
            public_ip_name=public_ip_name,
            vnet_id=target.vnet_id,
        )


class CleanupBastionHandler(_BastionHandler):
    """Remove the bastion serving the revoked scope's VNet once nothing needs it.

    Safety checks, in order, before anything is deleted:
    1. the bastion must carry the management tag (unless requireManagedTag
       is false), otherwise it is ``preserved``;
    2. no other live assignment of any role whose grant creates a bastion
       may resolve to the same VNet, otherwise it is ``preserved``.
    """

    name = "cleanup-bastion"

    def execute(self, context: ExecutionContext) -> ActionOutcome:
        return self._cleanup(context, dry_run=False)

    def plan(self, context: ExecutionContext) -> ActionOutcome:
        return self._cleanup(context, dry_run=True)

    def _cleanup(self, context: ExecutionContext, dry_run: bool) -> ActionOutcome:
        require_managed = _bool_parameter(context, "requireManagedTag", True)
        delete_public_ip = _bool_parameter(context, "deletePublicIp", True)
        prefix = "Dry run: " if dry_run else ""

        target = self._resolve_target(context)
        bastion = self._find_bastion(target)
        if bastion is None:
            return ActionOutcome.succeeded(
                self.name,
                f"{prefix}No bastion serves {target.vnet_name}",
                dry_run=dry_run,
                removed=False,
                absent=True,
                vnet_id=target.vnet_id,
            )

        if require_managed and not is_managed(bastion):
            logger.warning(
                "Bastion not managed by responder, preserving",
                extra={"bastion_id": bastion.id, "correlation_id": context.event.correlation_id},
            )
            return ActionOutcome.succeeded(
                self.name,
                f"{prefix}Bastion {bastion.name} was not created by this responder; preserved",
                dry_run=dry_run,
                removed=False,
                preserved=True,
                reason="unmanaged",
                bastion_id=bastion.id,
            )

        blocking = self._other_grants_on_network(context, target)
        if blocking:
            return ActionOutcome.succeeded(
                self.name,
                f"{prefix}Bastion {bastion.name} still required by "
                f"{len(blocking)} active grant(s); preserved",
                dry_run=dry_run,
                removed=False,
                preserved=True,
                reason="active_grants",
                active_grants=len(blocking),
                blocking_scopes=blocking[:MAX_REPORTED_SCOPES],
                bastion_id=bastion.id,
            )

        if dry_run:
            return ActionOutcome.succeeded(
                self.name,
                f"Dry run: would remove bastion {bastion.name}",
                dry_run=True,
                removed=False,
                would_remove=True,
                bastion_id=bastion.id,
            )

        deleted = call_with_retry(
            lambda: self._network.delete_bastion(bastion, delete_public_ip=delete_public_ip),
            operation_name="Delete bastion host",
        )
        return ActionOutcome.succeeded(
            self.name,
            f"Removed bastion {bastion.name}",
            removed=True,
            bastion_id=bastion.id,
            deleted_resources=deleted,
        )

    def _other_grants_on_network(
        self, context: ExecutionContext, target: NetworkTarget
    ) -> list[str]:
        """Scopes of other live grants that provision a bastion on the same VNet.

        Grants of every rule that runs create-bastion on grant count, not only
        the revoked role's. Each grant is checked against its own rule's
        supported resource types.
        """
        event = context.event
        rules = _provisioning_rules(context)
        assignments = call_with_retry(
            lambda: list(self._network.list_role_assignments(rule.role_id for rule in rules)),
            operation_name="List role assignments",
        )

        resolved: dict[str, NetworkTarget | None] = {}
        blocking: list[str] = []
        for assignment in assignments:
            if (
                event.assignment_id
                and assignment.assignment_id.lower() == event.assignment_id.lower()
            ):
                continue
            if (
                event.principal_known
                and assignment.principal_id.lower() == event.principal_id.lower()
                and assignment.scope.lower() == event.scope.lower()
                and context.rule.matches(assignment.role_definition_id)
            ):
                # The revoked assignment itself, still visible due to replication lag
                continue

            rule = next((r for r in rules if r.matches(assignment.role_definition_id)), None)
            if rule is None:
                continue
            resource_type, known = classify_resource_type(assignment.scope)
            if not known or resource_type not in rule.supported_resource_types:
                continue

            key = assignment.scope.lower()
            if key not in resolved:
                resolved[key] = self._resolve_other(assignment.scope, context)
            other = resolved[key]
            if other is not None and other.same_network(target):
                blocking.append(assignment.scope)

        return blocking

    def _resolve_other(self, scope: str, context: ExecutionContext) -> NetworkTarget | None:
        try:
            return call_with_retry(
                lambda: self._network.resolve_target(scope, context.parameters),
                operation_name="Resolve grant network",
            )
        except (ResourceNotFoundError, HandlerConfigurationError) as e:
            logger.warning(
                "Could not resolve network for active grant, ignoring it",
                extra={"scope": scope, "error": str(e)},
            )
            return None
