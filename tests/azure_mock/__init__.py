"""Azure SDK mocks for bastion responder tests.

Provides in-memory implementations of the network, compute and authorization
management clients so the full pipeline can run without Azure connectivity.

Key Features:
- Shared in-memory state for VMs, VNets, subnets, public IPs, bastions and
  role assignments
- Long-running operations that complete immediately
- Error injection per SDK operation for retry and failure scenarios
- Managed Identity simulation

Usage:
    from azure_mock import MockAzureContext

    with MockAzureContext() as ctx:
        ctx.state.add_vm("rg-app", "vm-1", vnet_name="vnet-app")

        responder = RoleChangeResponder.from_config(config)
        await responder.process(payload)

        assert ctx.state.count("create_bastion") == 1
"""

from .context import MockAzureContext
from .credential import MockManagedIdentityCredential, create_mock_credential
from .network import (
    MOCK_SUBSCRIPTION_ID,
    MockAuthorizationClient,
    MockComputeClient,
    MockNetworkClient,
    MockNetworkState,
    create_mock_network,
    make_http_error,
)

__all__ = [
    "MOCK_SUBSCRIPTION_ID",
    "MockAuthorizationClient",
    "MockAzureContext",
    "MockComputeClient",
    "MockManagedIdentityCredential",
    "MockNetworkClient",
    "MockNetworkState",
    "create_mock_credential",
    "create_mock_network",
    "make_http_error",
]
