"""Instance lifecycle models: statuses, health, and the transition table."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class InstanceStatus(str, Enum):
    """Lifecycle state of one deployed agent instance."""

    PENDING = "pending"
    CREATING = "creating"
    RUNNING = "running"
    RECONCILING = "reconciling"
    DEGRADED = "degraded"
    STOPPED = "stopped"
    DELETING = "deleting"
    ERROR = "error"
    PAUSED = "paused"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    DEGRADED = "degraded"
    UNKNOWN = "unknown"


# Valid status transitions, enforced by InstanceStateMachine.
# ERROR is reachable from every non-terminal state. PAUSED is only
# entered and left through the explicit pause/resume operations.
VALID_TRANSITIONS: dict[InstanceStatus, set[InstanceStatus]] = {
    InstanceStatus.PENDING: {
        InstanceStatus.CREATING,
        InstanceStatus.DELETING,
        InstanceStatus.ERROR,
        InstanceStatus.PAUSED,
    },
    InstanceStatus.CREATING: {
        InstanceStatus.CREATING,  # a newer manifest restarts creation
        InstanceStatus.RUNNING,
        InstanceStatus.DEGRADED,
        InstanceStatus.STOPPED,
        InstanceStatus.DELETING,
        InstanceStatus.ERROR,
    },
    InstanceStatus.RUNNING: {
        InstanceStatus.CREATING,
        InstanceStatus.RECONCILING,
        InstanceStatus.DEGRADED,
        InstanceStatus.STOPPED,
        InstanceStatus.DELETING,
        InstanceStatus.ERROR,
        InstanceStatus.PAUSED,
    },
    InstanceStatus.RECONCILING: {
        InstanceStatus.CREATING,
        InstanceStatus.RECONCILING,
        InstanceStatus.RUNNING,
        InstanceStatus.DEGRADED,
        InstanceStatus.STOPPED,
        InstanceStatus.DELETING,
        InstanceStatus.ERROR,
    },
    InstanceStatus.DEGRADED: {
        InstanceStatus.CREATING,
        InstanceStatus.RECONCILING,
        InstanceStatus.RUNNING,
        InstanceStatus.STOPPED,
        InstanceStatus.DELETING,
        InstanceStatus.ERROR,
        InstanceStatus.PAUSED,
    },
    InstanceStatus.STOPPED: {
        InstanceStatus.CREATING,
        InstanceStatus.RECONCILING,
        InstanceStatus.DELETING,
    },
    InstanceStatus.DELETING: {InstanceStatus.ERROR},
    InstanceStatus.ERROR: {
        InstanceStatus.CREATING,
        InstanceStatus.RECONCILING,
        InstanceStatus.STOPPED,
        InstanceStatus.DELETING,
        InstanceStatus.PAUSED,
    },
    InstanceStatus.PAUSED: {
        InstanceStatus.PENDING,
        InstanceStatus.RUNNING,
        InstanceStatus.DEGRADED,
        InstanceStatus.STOPPED,
        InstanceStatus.ERROR,
        InstanceStatus.DELETING,
    },
}

# Drift is only meaningful once something has been converged.
DRIFT_ELIGIBLE: frozenset[InstanceStatus] = frozenset(
    {InstanceStatus.RUNNING, InstanceStatus.DEGRADED}
)

# Transitional states that must eventually be left; watched by the stuck sweep.
TRANSITIONAL: frozenset[InstanceStatus] = frozenset(
    {InstanceStatus.CREATING, InstanceStatus.RECONCILING}
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LastError(BaseModel):
    """The most recent failure recorded against an instance."""

    model_config = ConfigDict(frozen=True)

    message: str
    stack: str | None = None
    occurred_at: datetime = Field(default_factory=_utcnow)


class Instance(BaseModel):
    """One deployed agent instance.

    The instance owns its desired-manifest pointer and its runtime state.
    Updates produce a new object through ``model_copy(update=...)``; the
    store is the only place an instance is persisted.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"inst-{uuid.uuid4().hex[:12]}")
    name: str
    workspace_id: str
    fleet_id: str

    # Config refs
    desired_manifest_id: str | None = None
    config_fingerprint: str | None = None
    workload_fingerprint: str | None = None  # adapter, tier and runtime last converged
    deployment_type: str = "simulated"
    deployment_target_id: str | None = None
    resource_ref: str | None = None  # adapter-assigned identifier of the deployed workload

    # Gateway endpoint of the running agent
    gateway_host: str | None = None
    gateway_port: int | None = None

    # Delegation targets (team members this agent may hand work to)
    delegation_targets: list[str] = Field(default_factory=list)

    # Runtime state
    status: InstanceStatus = InstanceStatus.PENDING
    health: HealthStatus = HealthStatus.UNKNOWN
    paused_from: InstanceStatus | None = None
    last_reconcile_at: datetime | None = None
    last_health_check_at: datetime | None = None
    last_error: LastError | None = None
    error_count: int = Field(default=0, ge=0)

    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_deployed(self) -> bool:
        """Whether a configuration has ever been converged for this instance."""
        return self.config_fingerprint is not None
