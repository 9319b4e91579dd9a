"""Manifest service — versioned desired state for instances.

Creating a manifest is one atomic unit: the new version is inserted, the
instance is re-pointed at it and moved to CREATING, and an audit event is
appended, all in a single store transaction. Concurrent creates for the
same instance are serialized by a per-instance lock on top of the store's
write lock, so version numbers never collide or skip.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

from fleetplane.core.errors import InvalidStateError, NotFoundError, PolicyRejectedError
from fleetplane.core.lifecycle import InstanceStateMachine
from fleetplane.core.locks import KeyedLock
from fleetplane.core.policy import PolicyEngine
from fleetplane.core.store import FleetStore
from fleetplane.models.audit import AuditEvent
from fleetplane.models.instances import Instance, InstanceStatus
from fleetplane.models.manifests import ChannelSpec, ManifestVersion
from fleetplane.models.policy import PolicyResult, PolicyViolation

logger = logging.getLogger(__name__)

# (instance_id, channel) -> accepted?
ChannelTokenValidator = Callable[[str, ChannelSpec], bool]


@runtime_checkable
class ReconcileDispatcher(Protocol):
    """Anything that can accept an instance for asynchronous reconciliation."""

    def submit(self, instance_id: str) -> Any:
        ...


class ManifestService:
    """Create, read, and trigger reconciliation of instance manifests.

    Parameters
    ----------
    store:
        Durable store for instances, manifests, and audit events.
    policy:
        Policy engine used to validate content before it is persisted.
    dispatcher:
        Receives instance ids after a manifest is created and from
        ``trigger_reconcile``. Optional so the service can be used for
        validation and history alone.
    channel_validator:
        Optional pre-check run against every enabled channel before a
        manifest declaring it is accepted.
    """

    def __init__(
        self,
        store: FleetStore,
        policy: PolicyEngine | None = None,
        dispatcher: ReconcileDispatcher | None = None,
        channel_validator: ChannelTokenValidator | None = None,
    ) -> None:
        self._store = store
        self._policy = policy or PolicyEngine()
        self._dispatcher = dispatcher
        self._channel_validator = channel_validator
        self._lifecycle = InstanceStateMachine(store)
        self._locks = KeyedLock()

    def set_dispatcher(self, dispatcher: ReconcileDispatcher) -> None:
        self._dispatcher = dispatcher

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self, content: dict[str, Any]) -> PolicyResult:
        """Validate *content* without persisting anything."""
        return self._policy.validate(content)

    def _check_channels(self, instance_id: str, content: dict[str, Any]) -> None:
        if self._channel_validator is None:
            return
        manifest = self._policy.parse(content)
        rejected = [
            PolicyViolation(
                code="CHANNEL_TOKEN_INVALID",
                message=f"Credentials for {channel.type.value} channel '{channel.secret_ref}' were rejected",
            )
            for channel in manifest.spec.channels
            if channel.enabled and not self._channel_validator(instance_id, channel)
        ]
        if rejected:
            raise PolicyRejectedError(rejected)

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create(
        self,
        instance_id: str,
        content: dict[str, Any],
        description: str | None = None,
        created_by: str = "system",
    ) -> ManifestVersion:
        """Persist the next manifest version for an instance.

        Raises
        ------
        NotFoundError
            If the instance does not exist.
        PolicyRejectedError
            If validation produced ERROR-severity violations. Nothing is written.
        InvalidTransitionError
            If the instance's status does not allow moving to CREATING.
        """
        self._store.require_instance(instance_id)

        result = self._policy.validate(content)
        if not result.valid:
            raise PolicyRejectedError(result.errors)
        self._check_channels(instance_id, content)

        with self._locks.hold(instance_id):
            with self._store.transaction() as tx:
                current = tx.require_instance(instance_id)
                version = tx.next_manifest_version(instance_id)
                manifest = ManifestVersion(
                    instance_id=instance_id,
                    version=version,
                    content=content,
                    description=description,
                    created_by=created_by,
                )
                updated = self._lifecycle.apply(
                    current,
                    InstanceStatus.CREATING,
                    desired_manifest_id=manifest.id,
                )
                tx.insert_manifest(manifest)
                tx.update_instance(updated)
                tx.append_audit(
                    AuditEvent(
                        actor=created_by,
                        action="MANIFEST_CREATE",
                        resource_id=instance_id,
                        workspace_id=current.workspace_id,
                        diff_summary=description or f"Created manifest version {version}",
                        metadata={"manifest_id": manifest.id, "version": version},
                    )
                )

        for warning in result.warnings:
            logger.warning("Manifest %s v%d: %s", instance_id, version, warning)
        logger.info("Created manifest %s v%d for instance %s", manifest.id, version, instance_id)
        if self._dispatcher is not None:
            self._dispatcher.submit(instance_id)
        return manifest

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def list_versions(self, instance_id: str) -> list[ManifestVersion]:
        """All versions for an instance, newest first."""
        self._store.require_instance(instance_id)
        return self._store.list_manifests(instance_id)

    def get(self, instance_id: str, version: int) -> ManifestVersion:
        manifest = self._store.get_manifest_version(instance_id, version)
        if manifest is None:
            raise NotFoundError(f"Manifest version {version} not found for instance {instance_id}")
        return manifest

    def get_latest(self, instance_id: str) -> ManifestVersion:
        """The highest-numbered version for an instance.

        Raises
        ------
        NotFoundError
            If the instance has no manifests yet.
        """
        manifest = self._store.latest_manifest(instance_id)
        if manifest is None:
            raise NotFoundError(f"No manifests found for instance {instance_id}")
        return manifest

    # ------------------------------------------------------------------
    # Reconcile trigger
    # ------------------------------------------------------------------

    def trigger_reconcile(self, instance_id: str, actor: str = "system") -> Instance:
        """Mark an instance for reconciliation and hand it to the dispatcher.

        The instance moves to CREATING if nothing has been deployed yet and
        to RECONCILING otherwise. The reconcile itself runs asynchronously;
        its outcome is visible through the instance status and last_error.

        Raises
        ------
        NotFoundError
            If the instance does not exist.
        InvalidStateError
            If no desired manifest is set, or the current status does not
            allow reconciliation. Status is left unchanged.
        """
        instance = self._store.require_instance(instance_id)
        if instance.desired_manifest_id is None:
            raise InvalidStateError(f"No desired manifest set for instance {instance_id}")

        target = InstanceStatus.RECONCILING if instance.is_deployed else InstanceStatus.CREATING
        updated = self._lifecycle.transition(
            instance_id, target, action="RECONCILE_TRIGGER", actor=actor
        )
        if self._dispatcher is not None:
            self._dispatcher.submit(instance_id)
        return updated
