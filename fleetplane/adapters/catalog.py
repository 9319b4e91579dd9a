"""Built-in adapters and the catalogue of announced cloud backends.

Cloud backends are listed with their metadata so operator tooling can
show them, but have no implementation here; dispatching to them fails
with ``AdapterFailureError`` until one is registered.
"""

from __future__ import annotations

from fleetplane.adapters.docker import DockerAdapter
from fleetplane.adapters.registry import AdapterRegistry
from fleetplane.adapters.simulated import SimulatedAdapter
from fleetplane.models.adapters import (
    AdapterCapabilities,
    AdapterMetadata,
    AdapterStatus,
    CredentialRequirement,
    TierSpec,
)

_CLOUD_CAPABILITIES = AdapterCapabilities(
    scaling=True,
    sandbox=True,
    persistent_storage=True,
    https_endpoint=True,
    log_streaming=True,
)

ECS_EC2_METADATA = AdapterMetadata(
    type="ecs-ec2",
    display_name="AWS ECS on EC2",
    description="Run agents as ECS services on an EC2 capacity provider",
    icon="aws",
    status=AdapterStatus.COMING_SOON,
    provisioning_steps=["Create cluster", "Register task definition", "Create service"],
    capabilities=_CLOUD_CAPABILITIES,
    credentials=[
        CredentialRequirement(
            key="accessKeyId",
            display_name="Access Key ID",
            pattern=r"^AKIA[0-9A-Z]{16}$",
        ),
        CredentialRequirement(key="secretAccessKey", display_name="Secret Access Key", sensitive=True),
        CredentialRequirement(key="region", display_name="Region", description="e.g. us-east-1"),
    ],
    tier_specs=[
        TierSpec(tier="light", cpu=0.5, memory_mib=1024, disk_gb=5, machine_type="t3.small"),
        TierSpec(tier="standard", cpu=1.0, memory_mib=2048, disk_gb=10, machine_type="t3.medium"),
        TierSpec(tier="performance", cpu=2.0, memory_mib=4096, disk_gb=20, machine_type="t3.large"),
    ],
)

GCE_METADATA = AdapterMetadata(
    type="gce",
    display_name="Google Compute Engine",
    description="Run agents on Compute Engine VMs",
    icon="gcp",
    status=AdapterStatus.COMING_SOON,
    provisioning_steps=["Create VM", "Attach data disk", "Start agent container"],
    capabilities=_CLOUD_CAPABILITIES,
    credentials=[
        CredentialRequirement(key="projectId", display_name="Project ID"),
        CredentialRequirement(key="keyFileJson", display_name="Service Account Key", sensitive=True),
        CredentialRequirement(key="zone", display_name="Zone", required=False),
    ],
    tier_specs=[
        TierSpec(tier="light", cpu=0.25, memory_mib=1024, disk_gb=5, machine_type="e2-micro"),
        TierSpec(tier="standard", cpu=2.0, memory_mib=2048, disk_gb=10, machine_type="e2-small"),
        TierSpec(tier="performance", cpu=2.0, memory_mib=4096, disk_gb=20, machine_type="e2-medium"),
    ],
)

AZURE_VM_METADATA = AdapterMetadata(
    type="azure-vm",
    display_name="Azure Virtual Machine",
    description="Run agents on Azure VMs",
    icon="azure",
    status=AdapterStatus.COMING_SOON,
    provisioning_steps=["Create resource group", "Create VM", "Start agent container"],
    capabilities=_CLOUD_CAPABILITIES,
    credentials=[
        CredentialRequirement(key="subscriptionId", display_name="Subscription ID"),
        CredentialRequirement(key="tenantId", display_name="Tenant ID"),
        CredentialRequirement(key="clientId", display_name="Client ID"),
        CredentialRequirement(key="clientSecret", display_name="Client Secret", sensitive=True),
    ],
    tier_specs=[
        TierSpec(tier="light", cpu=1.0, memory_mib=1024, disk_gb=5, machine_type="Standard_B1s"),
        TierSpec(tier="standard", cpu=2.0, memory_mib=2048, disk_gb=10, machine_type="Standard_B2s"),
        TierSpec(tier="performance", cpu=2.0, memory_mib=4096, disk_gb=20, machine_type="Standard_D2s_v3"),
    ],
)

CLOUD_CATALOG: tuple[AdapterMetadata, ...] = (ECS_EC2_METADATA, GCE_METADATA, AZURE_VM_METADATA)


def register_builtin_adapters(registry: AdapterRegistry) -> None:
    registry.register(SimulatedAdapter())
    registry.register(DockerAdapter())
    for metadata in CLOUD_CATALOG:
        registry.register_metadata(metadata)
