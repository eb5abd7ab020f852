"""Azure network collaborator for bastion provisioning.

Thin wrapper over the Azure management SDKs used by the bastion handlers:

- ComputeManagementClient: VM -> network interface lookup
- NetworkManagementClient: virtual networks, subnets, public IPs, bastion hosts
- AuthorizationManagementClient: live role assignment queries for the
  cleanup safety check

All existence checks are live queries; nothing is cached across events.
Long-running operations are awaited through their SDK pollers, so callers
must run inside the executor's worker thread and timeout.

Clients are bound to one subscription. Scopes in other subscriptions are a
configuration error.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass
from typing import Any

from azure.core.credentials import TokenCredential
from azure.core.exceptions import ResourceNotFoundError
from azure.mgmt.authorization import AuthorizationManagementClient
from azure.mgmt.compute import ComputeManagementClient
from azure.mgmt.network import NetworkManagementClient
from azure.mgmt.network.models import (
    BastionHost,
    BastionHostIPConfiguration,
    PublicIPAddress,
    PublicIPAddressSku,
    Sku,
    SubResource,
    Subnet,
)

from .config import MAX_RESOURCE_NAME_LENGTH
from .events import ResourceType
from .handlers.base import HandlerConfigurationError
from .normalizer import classify_resource_type

logger = logging.getLogger(__name__)

# Azure requires this exact subnet name for bastion hosts
BASTION_SUBNET_NAME = "AzureBastionSubnet"

# Tag marking resources this responder created and may delete
MANAGED_BY_TAG = "managedBy"
MANAGED_BY_VALUE = "bastion-responder"

_RESOURCE_ID_RE = re.compile(
    r"^/subscriptions/(?P<subscription>[^/]+)"
    r"(?:/resourceGroups/(?P<resource_group>[^/]+))?"
    r"(?:/providers/(?P<namespace>[^/]+)/(?P<type>[^/]+)/(?P<name>[^/]+)"
    r"(?:/(?P<child_type>[^/]+)/(?P<child_name>[^/]+))?)?/?$",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class ParsedResourceId:
    """Components of an ARM resource id."""

    subscription_id: str
    resource_group: str | None = None
    namespace: str | None = None
    type: str | None = None
    name: str | None = None
    child_type: str | None = None
    child_name: str | None = None


def parse_resource_id(resource_id: str) -> ParsedResourceId:
    """Parse an ARM resource id.

    Raises:
        HandlerConfigurationError: If the id is not a well-formed subscription,
            resource group, or resource id.
    """
    match = _RESOURCE_ID_RE.match(resource_id.strip())
    if match is None:
        raise HandlerConfigurationError(f"Malformed Azure resource id: {resource_id}")
    return ParsedResourceId(
        subscription_id=match.group("subscription"),
        resource_group=match.group("resource_group"),
        namespace=match.group("namespace"),
        type=match.group("type"),
        name=match.group("name"),
        child_type=match.group("child_type"),
        child_name=match.group("child_name"),
    )


@dataclass(frozen=True)
class NetworkTarget:
    """The virtual network a bastion host serves."""

    subscription_id: str
    resource_group: str
    vnet_name: str
    location: str | None = None

    @property
    def vnet_id(self) -> str:
        return (
            f"/subscriptions/{self.subscription_id}/resourceGroups/{self.resource_group}"
            f"/providers/Microsoft.Network/virtualNetworks/{self.vnet_name}"
        )

    @property
    def bastion_subnet_id(self) -> str:
        return f"{self.vnet_id}/subnets/{BASTION_SUBNET_NAME}"

    def same_network(self, other: NetworkTarget) -> bool:
        return self.vnet_id.lower() == other.vnet_id.lower()


@dataclass(frozen=True)
class RoleAssignmentRecord:
    """A live role assignment as returned by the authorization API."""

    assignment_id: str
    role_definition_id: str
    scope: str
    principal_id: str


def is_managed(resource: Any) -> bool:
    """Check whether a resource carries this responder's management tag."""
    tags = getattr(resource, "tags", None) or {}
    return tags.get(MANAGED_BY_TAG) == MANAGED_BY_VALUE


def truncate_name(name: str) -> str:
    return name[:MAX_RESOURCE_NAME_LENGTH].rstrip("-")


class BastionNetwork:
    """Azure operations needed to provision and clean up bastion hosts."""

    def __init__(
        self,
        network_client: NetworkManagementClient,
        compute_client: ComputeManagementClient,
        authorization_client: AuthorizationManagementClient,
        subscription_id: str,
    ) -> None:
        self._network = network_client
        self._compute = compute_client
        self._authorization = authorization_client
        self._subscription_id = subscription_id

    @classmethod
    def from_credential(cls, credential: TokenCredential, subscription_id: str) -> BastionNetwork:
        """Build the SDK clients for a subscription from a credential."""
        return cls(
            network_client=NetworkManagementClient(
                credential=credential, subscription_id=subscription_id
            ),
            compute_client=ComputeManagementClient(
                credential=credential, subscription_id=subscription_id
            ),
            authorization_client=AuthorizationManagementClient(
                credential=credential, subscription_id=subscription_id
            ),
            subscription_id=subscription_id,
        )

    @property
    def subscription_id(self) -> str:
        return self._subscription_id

    # -------------------------------------------------------------------------
    # Target resolution
    # -------------------------------------------------------------------------

    def resolve_target(self, scope: str, parameters: Mapping[str, Any]) -> NetworkTarget:
        """Find the virtual network a role assignment scope should be served from.

        - VM scope: the VNet of the VM's primary network interface.
        - Resource group scope: ``vnetName`` if set, else the group's first VNet.
        - Subscription or management group scope: ``vnetResourceGroup`` and
          ``vnetName`` must both be set.

        Raises:
            HandlerConfigurationError: If the scope cannot be mapped to a VNet.
            ResourceNotFoundError: If a referenced resource does not exist.
        """
        resource_type, known = classify_resource_type(scope)
        if not known:
            raise HandlerConfigurationError(f"Unsupported scope for bastion handling: {scope}")

        if resource_type in (ResourceType.SUBSCRIPTION.value, ResourceType.MANAGEMENT_GROUP.value):
            return self._resolve_configured_network(parameters, scope)

        parsed = parse_resource_id(scope)
        self._check_subscription(parsed.subscription_id, scope)
        if parsed.resource_group is None:
            raise HandlerConfigurationError(f"Scope has no resource group: {scope}")

        if resource_type == ResourceType.RESOURCE_GROUP.value:
            vnet_name = parameters.get("vnetName")
            if vnet_name:
                vnet = self._network.virtual_networks.get(parsed.resource_group, vnet_name)
            else:
                vnet = next(iter(self._network.virtual_networks.list(parsed.resource_group)), None)
                if vnet is None:
                    raise HandlerConfigurationError(
                        f"No virtual network found in resource group {parsed.resource_group}"
                    )
            return NetworkTarget(
                subscription_id=parsed.subscription_id,
                resource_group=parsed.resource_group,
                vnet_name=vnet.name,
                location=vnet.location,
            )

        return self._resolve_vm_network(parsed)

    def _resolve_configured_network(
        self, parameters: Mapping[str, Any], scope: str
    ) -> NetworkTarget:
        vnet_resource_group = parameters.get("vnetResourceGroup")
        vnet_name = parameters.get("vnetName")
        if not vnet_resource_group or not vnet_name:
            raise HandlerConfigurationError(
                f"Scope {scope} requires parameters 'vnetResourceGroup' and 'vnetName'"
            )
        vnet = self._network.virtual_networks.get(vnet_resource_group, vnet_name)
        return NetworkTarget(
            subscription_id=self._subscription_id,
            resource_group=vnet_resource_group,
            vnet_name=vnet.name,
            location=vnet.location,
        )

    def _resolve_vm_network(self, vm_id: ParsedResourceId) -> NetworkTarget:
        vm = self._compute.virtual_machines.get(vm_id.resource_group, vm_id.name)

        nic_refs = list(getattr(vm.network_profile, "network_interfaces", None) or [])
        if not nic_refs:
            raise HandlerConfigurationError(f"VM {vm_id.name} has no network interfaces")
        primary = next((ref for ref in nic_refs if getattr(ref, "primary", False)), nic_refs[0])

        nic_id = parse_resource_id(primary.id)
        nic = self._network.network_interfaces.get(nic_id.resource_group, nic_id.name)

        subnet_id = next(
            (
                config.subnet.id
                for config in nic.ip_configurations or []
                if config.subnet is not None and config.subnet.id
            ),
            None,
        )
        if subnet_id is None:
            raise HandlerConfigurationError(f"Network interface {nic_id.name} has no subnet")

        subnet = parse_resource_id(subnet_id)
        self._check_subscription(subnet.subscription_id, subnet_id)
        return NetworkTarget(
            subscription_id=subnet.subscription_id,
            resource_group=subnet.resource_group or vm_id.resource_group,
            vnet_name=subnet.name,
            location=vm.location,
        )

    def _check_subscription(self, subscription_id: str, resource: str) -> None:
        if subscription_id.lower() != self._subscription_id.lower():
            raise HandlerConfigurationError(
                f"{resource} is outside the managed subscription {self._subscription_id}"
            )

    # -------------------------------------------------------------------------
    # Bastion hosts
    # -------------------------------------------------------------------------

    def find_bastion(self, target: NetworkTarget) -> BastionHost | None:
        """Return the bastion host attached to the target VNet, if any."""
        expected_subnet = target.bastion_subnet_id.lower()
        for bastion in self._network.bastion_hosts.list():
            for ip_config in bastion.ip_configurations or []:
                subnet = ip_config.subnet
                if subnet is not None and (subnet.id or "").lower() == expected_subnet:
                    return bastion
        return None

    def ensure_bastion_subnet(
        self, target: NetworkTarget, address_prefix: str | None
    ) -> tuple[Subnet, bool]:
        """Get or create AzureBastionSubnet in the target VNet.

        Returns:
            Tuple of (subnet, created).

        Raises:
            HandlerConfigurationError: If the subnet is missing and no
                address prefix is configured.
        """
        existing = self._get_or_none(
            lambda: self._network.subnets.get(
                target.resource_group, target.vnet_name, BASTION_SUBNET_NAME
            )
        )
        if existing is not None:
            return existing, False

        if not address_prefix:
            raise HandlerConfigurationError(
                f"{BASTION_SUBNET_NAME} is missing in {target.vnet_name} and no "
                "'bastionSubnetPrefix' parameter is configured"
            )

        logger.info(
            "Creating bastion subnet",
            extra={"vnet_id": target.vnet_id, "address_prefix": address_prefix},
        )
        poller = self._network.subnets.begin_create_or_update(
            target.resource_group,
            target.vnet_name,
            BASTION_SUBNET_NAME,
            Subnet(address_prefix=address_prefix),
        )
        return poller.result(), True

    def ensure_public_ip(
        self, target: NetworkTarget, name: str, location: str, tags: Mapping[str, str]
    ) -> tuple[PublicIPAddress, bool]:
        """Get or create the Standard static public IP for a bastion host.

        Returns:
            Tuple of (public IP, created).
        """
        existing = self._get_or_none(
            lambda: self._network.public_ip_addresses.get(target.resource_group, name)
        )
        if existing is not None:
            return existing, False

        logger.info(
            "Creating bastion public IP",
            extra={"resource_group": target.resource_group, "public_ip_name": name},
        )
        poller = self._network.public_ip_addresses.begin_create_or_update(
            target.resource_group,
            name,
            PublicIPAddress(
                location=location,
                sku=PublicIPAddressSku(name="Standard"),
                public_ip_allocation_method="Static",
                tags=dict(tags),
            ),
        )
        return poller.result(), True

    def create_bastion(
        self,
        target: NetworkTarget,
        name: str,
        location: str,
        subnet_id: str,
        public_ip_id: str,
        sku: str,
        tags: Mapping[str, str],
    ) -> BastionHost:
        """Create a bastion host in the target VNet and wait for completion."""
        logger.info(
            "Creating bastion host",
            extra={"vnet_id": target.vnet_id, "bastion_name": name, "sku": sku},
        )
        poller = self._network.bastion_hosts.begin_create_or_update(
            target.resource_group,
            name,
            BastionHost(
                location=location,
                sku=Sku(name=sku),
                tags=dict(tags),
                ip_configurations=[
                    BastionHostIPConfiguration(
                        name="bastionIpConfig",
                        subnet=SubResource(id=subnet_id),
                        public_ip_address=SubResource(id=public_ip_id),
                    )
                ],
            ),
        )
        return poller.result()

    def delete_bastion(self, bastion: BastionHost, delete_public_ip: bool = True) -> list[str]:
        """Delete a bastion host and, optionally, its managed public IPs.

        Public IPs are only deleted if they carry the management tag.

        Returns:
            Resource ids that were deleted.
        """
        bastion_id = parse_resource_id(bastion.id)
        public_ip_ids = [
            config.public_ip_address.id
            for config in bastion.ip_configurations or []
            if config.public_ip_address is not None and config.public_ip_address.id
        ]

        logger.info("Deleting bastion host", extra={"bastion_id": bastion.id})
        self._network.bastion_hosts.begin_delete(
            bastion_id.resource_group, bastion_id.name
        ).result()
        deleted = [bastion.id]

        if delete_public_ip:
            for public_ip_id in public_ip_ids:
                pip_id = parse_resource_id(public_ip_id)
                public_ip = self._get_or_none(
                    lambda: self._network.public_ip_addresses.get(
                        pip_id.resource_group, pip_id.name
                    )
                )
                if public_ip is None or not is_managed(public_ip):
                    continue
                logger.info("Deleting bastion public IP", extra={"public_ip_id": public_ip_id})
                self._network.public_ip_addresses.begin_delete(
                    pip_id.resource_group, pip_id.name
                ).result()
                deleted.append(public_ip_id)

        return deleted

    # -------------------------------------------------------------------------
    # Role assignments
    # -------------------------------------------------------------------------

    def list_role_assignments(self, role_ids: Iterable[str]) -> Iterator[RoleAssignmentRecord]:
        """List live assignments in the subscription whose role id ends with any of role_ids."""
        suffixes = tuple(role_id.lower() for role_id in role_ids)
        if not suffixes:
            return
        for assignment in self._authorization.role_assignments.list_for_subscription():
            role_definition_id = assignment.role_definition_id or ""
            if not role_definition_id.lower().endswith(suffixes):
                continue
            yield RoleAssignmentRecord(
                assignment_id=assignment.id or "",
                role_definition_id=role_definition_id,
                scope=assignment.scope or "",
                principal_id=assignment.principal_id or "",
            )

    @staticmethod
    def _get_or_none(get: Callable[[], Any]) -> Any:
        try:
            return get()
        except ResourceNotFoundError:
            return None
