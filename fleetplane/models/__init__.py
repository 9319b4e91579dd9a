"""Fleetplane data models — all Pydantic v2, all frozen (immutable)."""

from fleetplane.models.adapters import (
    AdapterCapabilities,
    AdapterMetadata,
    AdapterStatus,
    CredentialRequirement,
    ResourceDescription,
    ResourceRef,
    ResourceStatus,
    TierSpec,
)
from fleetplane.models.audit import AuditEvent
from fleetplane.models.drift import DriftAssessment, DriftResult
from fleetplane.models.instances import (
    DRIFT_ELIGIBLE,
    TRANSITIONAL,
    VALID_TRANSITIONS,
    HealthStatus,
    Instance,
    InstanceStatus,
    LastError,
)
from fleetplane.models.manifests import Manifest, ManifestVersion
from fleetplane.models.policy import PolicyResult, PolicyViolation, Severity
from fleetplane.models.reconcile import (
    ChainResult,
    PipelineStep,
    PreprocessorResult,
    ReconcileResult,
)

__all__ = [
    # adapters
    "AdapterCapabilities",
    "AdapterMetadata",
    "AdapterStatus",
    "CredentialRequirement",
    "ResourceDescription",
    "ResourceRef",
    "ResourceStatus",
    "TierSpec",
    # audit
    "AuditEvent",
    # drift
    "DriftAssessment",
    "DriftResult",
    # instances
    "DRIFT_ELIGIBLE",
    "TRANSITIONAL",
    "VALID_TRANSITIONS",
    "HealthStatus",
    "Instance",
    "InstanceStatus",
    "LastError",
    # manifests
    "Manifest",
    "ManifestVersion",
    # policy
    "PolicyResult",
    "PolicyViolation",
    "Severity",
    # reconcile
    "ChainResult",
    "PipelineStep",
    "PreprocessorResult",
    "ReconcileResult",
]
