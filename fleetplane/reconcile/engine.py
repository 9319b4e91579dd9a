"""Reconciliation engine — drives one instance toward its desired manifest.

Procedure (under a per-instance lease, so never twice at once per id):
1. Load the desired manifest; fail fast with InvalidStateError if none.
2. Run the preprocessor pipeline to get the effective configuration.
3. Negotiate adapter and tier. A deployed instance whose adapter, tier and
   runtime are unchanged gets the configuration pushed over its gateway
   (read the live hash, apply against it). Otherwise, or when the gateway
   cannot be reached, the adapter creates or updates the workload.
4. Success: record the fingerprints, clear last_error, status RUNNING
   (DEGRADED when the agent, or failing that the workload, reports
   unhealthy). error_count is a lifetime counter and is never reset here.
5. Failure: status ERROR, last_error recorded, error_count + 1. No retry;
   the scheduler or an operator triggers the next attempt.

Precondition errors are raised to the caller before anything changes.
Failures after the work has started are recorded on the instance and
returned in the ``ReconcileResult``, never raised.
"""

from __future__ import annotations

import asyncio
import logging
import traceback
from datetime import datetime, timezone
from typing import Any, Protocol

from fleetplane.adapters.base import DeleteOptions, InfrastructureAdapter
from fleetplane.adapters.registry import AdapterRegistry, get_registry, required_capabilities
from fleetplane.core.errors import AdapterFailureError, FleetplaneError, InvalidStateError
from fleetplane.core.hasher import config_fingerprint
from fleetplane.core.lifecycle import InstanceStateMachine
from fleetplane.core.locks import AsyncKeyedLock
from fleetplane.core.store import FleetStore
from fleetplane.gateway.errors import GatewayAuthError, GatewayError, GatewayUnavailableError
from fleetplane.gateway.protocol import GatewayHealth
from fleetplane.models.adapters import ResourceRef, TierSpec
from fleetplane.models.audit import AuditEvent
from fleetplane.models.instances import TRANSITIONAL, HealthStatus, Instance, InstanceStatus
from fleetplane.models.manifests import ManifestVersion, RuntimeSpec
from fleetplane.models.reconcile import ChainResult, ReconcileResult
from fleetplane.preprocessors import PreprocessorContext, PreprocessorPipeline, default_pipeline

logger = logging.getLogger(__name__)

# Statuses an operator must change explicitly before reconciling again.
_NOT_RECONCILABLE = frozenset({InstanceStatus.PAUSED, InstanceStatus.DELETING})

# The agent cannot be talked to; the adapter converges instead.
_UNREACHABLE = (GatewayUnavailableError, GatewayAuthError)


class AgentChannel(Protocol):
    """Gateway operations the engine uses (``InstanceGateway``)."""

    async def push_config(self, instance: Instance, config: dict[str, Any]) -> bool:
        ...

    async def health(self, instance: Instance) -> GatewayHealth:
        ...


def workload_fingerprint(deployment_type: str, tier: TierSpec, runtime: RuntimeSpec) -> str:
    """Fingerprint of everything about a workload except its agent config."""
    return config_fingerprint(
        {
            "deployment_type": deployment_type,
            "tier": tier.model_dump(mode="json"),
            "runtime": runtime.model_dump(mode="json"),
        }
    )


class ReconciliationEngine:
    """Sole driver of instance convergence.

    Parameters
    ----------
    store:
        The fleet store.
    registry:
        Adapter registry; defaults to the process-wide singleton.
    pipeline:
        Preprocessor pipeline; defaults to the built-in preprocessors.
    adapter_timeout:
        Seconds allowed for each adapter or gateway call.
    gateway:
        Channel to running agents. Without one every reconcile goes
        through the adapter and health comes from the adapter alone.
    """

    def __init__(
        self,
        store: FleetStore,
        registry: AdapterRegistry | None = None,
        pipeline: PreprocessorPipeline | None = None,
        adapter_timeout: float = 300.0,
        gateway: AgentChannel | None = None,
    ) -> None:
        self._store = store
        self._registry = registry or get_registry()
        self._pipeline = pipeline or default_pipeline()
        self._gateway = gateway
        self._lifecycle = InstanceStateMachine(store)
        self._leases = AsyncKeyedLock()
        self._adapter_timeout = adapter_timeout
        self._tasks: set[asyncio.Task[ReconcileResult | None]] = set()

    @property
    def pipeline(self) -> PreprocessorPipeline:
        return self._pipeline

    def is_reconciling(self, instance_id: str) -> bool:
        return self._leases.locked(instance_id)

    # ------------------------------------------------------------------
    # Effective configuration
    # ------------------------------------------------------------------

    @staticmethod
    def context_for(instance: Instance) -> PreprocessorContext:
        return PreprocessorContext(
            instance_id=instance.id,
            instance_name=instance.name,
            deployment_type=instance.deployment_type,
            delegation_targets=instance.delegation_targets,
        )

    def derive(self, instance: Instance, manifest: ManifestVersion) -> ChainResult:
        """Run the pipeline over the manifest's agent config."""
        document = manifest.document()
        return self._pipeline.run(document.spec.agent_config, self.context_for(instance))

    def effective_config(self, instance: Instance) -> dict[str, Any] | None:
        """Effective configuration of the desired manifest, or None if unset."""
        if instance.desired_manifest_id is None:
            return None
        manifest = self._store.get_manifest(instance.desired_manifest_id)
        if manifest is None:
            return None
        return self.derive(instance, manifest).config

    # ------------------------------------------------------------------
    # Reconcile
    # ------------------------------------------------------------------

    def _load_desired(self, instance: Instance) -> ManifestVersion:
        if instance.desired_manifest_id is None:
            raise InvalidStateError(f"No desired manifest set for instance {instance.id}")
        if instance.status in _NOT_RECONCILABLE:
            raise InvalidStateError(
                f"Cannot reconcile instance {instance.id} while {instance.status.value}"
            )
        manifest = self._store.get_manifest(instance.desired_manifest_id)
        if manifest is None:
            raise InvalidStateError(
                f"Desired manifest {instance.desired_manifest_id} of {instance.id} is missing"
            )
        return manifest

    async def reconcile(self, instance_id: str) -> ReconcileResult:
        """Converge one instance to its desired manifest.

        Raises
        ------
        NotFoundError
            If the instance does not exist.
        InvalidStateError
            If no desired manifest is set or the instance is paused or deleting.
        """
        async with self._leases.lease(instance_id):
            instance = self._store.require_instance(instance_id)
            manifest = self._load_desired(instance)

            if instance.status not in TRANSITIONAL:
                target = InstanceStatus.RECONCILING if instance.is_deployed else InstanceStatus.CREATING
                instance = self._lifecycle.transition(instance_id, target)

            started = datetime.now(timezone.utc)
            logger.info("Reconciling %s to manifest v%d", instance_id, manifest.version)
            chain: ChainResult | None = None
            try:
                document = manifest.document()
                chain = self.derive(instance, manifest)
                adapter, tier = self._registry.negotiate(
                    instance.deployment_type,
                    required_capabilities(document),
                    document.spec.tier,
                )
                workload = workload_fingerprint(instance.deployment_type, tier, document.spec.runtime)
                ref = await self._converge(instance, adapter, tier, document.spec.runtime, chain.config, workload)
                description = await asyncio.wait_for(adapter.describe(ref), self._adapter_timeout)
                healthy = await self._agent_healthy(instance, ref, description.healthy)
            except asyncio.TimeoutError:
                return self._record_failure(
                    instance_id,
                    f"Adapter or gateway call timed out after {self._adapter_timeout}s",
                    traceback.format_exc(),
                    chain,
                    started,
                )
            except Exception as exc:  # noqa: BLE001
                return self._record_failure(
                    instance_id,
                    str(exc) or type(exc).__name__,
                    traceback.format_exc(),
                    chain,
                    started,
                )

            fingerprint = config_fingerprint(chain.config)
            now = datetime.now(timezone.utc)
            updated = self._lifecycle.transition(
                instance_id,
                InstanceStatus.RUNNING if healthy else InstanceStatus.DEGRADED,
                action="RECONCILE_SUCCEEDED",
                diff_summary=f"Applied manifest v{manifest.version} ({fingerprint[:12]})",
                config_fingerprint=fingerprint,
                workload_fingerprint=workload,
                resource_ref=ref.encode(),
                deployment_target_id=ref.id,
                gateway_host=ref.gateway_host or instance.gateway_host,
                gateway_port=ref.gateway_port or instance.gateway_port,
                health=HealthStatus.HEALTHY if healthy else HealthStatus.DEGRADED,
                last_error=None,
                last_reconcile_at=now,
                last_health_check_at=now,
            )
            logger.info(
                "Reconciled %s -> %s (%d preprocessor change(s))",
                instance_id,
                updated.status.value,
                chain.modification_count,
            )
            return ReconcileResult(
                instance_id=instance_id,
                success=True,
                status=updated.status,
                config_fingerprint=fingerprint,
                resource_ref=updated.resource_ref,
                chain=chain,
                started_at=started,
                finished_at=now,
            )

    async def _converge(
        self,
        instance: Instance,
        adapter: InfrastructureAdapter,
        tier: TierSpec,
        runtime: RuntimeSpec,
        config: dict[str, Any],
        workload: str,
    ) -> ResourceRef:
        """Apply *config*, over the gateway when only the config changed."""
        if (
            self._gateway is not None
            and instance.is_deployed
            and instance.resource_ref
            and instance.workload_fingerprint == workload
        ):
            try:
                await asyncio.wait_for(
                    self._gateway.push_config(instance, config), self._adapter_timeout
                )
            except _UNREACHABLE as exc:
                logger.warning(
                    "Gateway of %s unreachable, converging through the adapter: %s",
                    instance.id,
                    exc,
                )
            else:
                return ResourceRef.decode(instance.resource_ref)
        return await asyncio.wait_for(
            adapter.create_or_update(instance.id, config, tier, runtime=runtime),
            self._adapter_timeout,
        )

    async def _agent_healthy(self, instance: Instance, ref: ResourceRef, fallback: bool) -> bool:
        """Agent-reported health, or *fallback* when the agent cannot be asked."""
        if self._gateway is None:
            return fallback
        target = instance.model_copy(
            update={
                "gateway_host": ref.gateway_host or instance.gateway_host,
                "gateway_port": ref.gateway_port or instance.gateway_port,
            }
        )
        try:
            health = await asyncio.wait_for(self._gateway.health(target), self._adapter_timeout)
        except (GatewayError, asyncio.TimeoutError) as exc:
            logger.info("Health of %s taken from the adapter: %s", instance.id, exc)
            return fallback
        return health.ok

    def _record_failure(
        self,
        instance_id: str,
        message: str,
        stack: str,
        chain: ChainResult | None,
        started: datetime,
    ) -> ReconcileResult:
        updated = self._lifecycle.fail(
            instance_id, message, stack=stack, action="RECONCILE_FAILED"
        )
        return ReconcileResult(
            instance_id=instance_id,
            success=False,
            status=updated.status,
            error=message,
            chain=chain,
            started_at=started,
            finished_at=datetime.now(timezone.utc),
        )

    # ------------------------------------------------------------------
    # Asynchronous dispatch
    # ------------------------------------------------------------------

    def submit(self, instance_id: str) -> asyncio.Task[ReconcileResult | None]:
        """Schedule a reconcile on the running loop and return its task."""
        task = asyncio.get_running_loop().create_task(
            self._run_submitted(instance_id), name=f"reconcile-{instance_id}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_submitted(self, instance_id: str) -> ReconcileResult | None:
        try:
            return await self.reconcile(instance_id)
        except FleetplaneError as exc:
            logger.warning("Reconcile of %s not performed: %s", instance_id, exc)
        except Exception:  # noqa: BLE001
            logger.exception("Unexpected error reconciling %s", instance_id)
        return None

    async def wait_idle(self) -> None:
        """Wait for every submitted reconcile to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Administrative operations
    # ------------------------------------------------------------------

    async def stop(self, instance_id: str, actor: str = "system") -> Instance:
        """Mark an instance STOPPED. The workload record is kept."""
        async with self._leases.lease(instance_id):
            return self._lifecycle.transition(
                instance_id, InstanceStatus.STOPPED, action="INSTANCE_STOP", actor=actor
            )

    async def pause(self, instance_id: str, actor: str = "system") -> Instance:
        """Enter PAUSED, remembering the status to resume into."""
        async with self._leases.lease(instance_id):
            instance = self._store.require_instance(instance_id)
            return self._lifecycle.transition(
                instance_id,
                InstanceStatus.PAUSED,
                action="INSTANCE_PAUSE",
                actor=actor,
                paused_from=instance.status,
            )

    async def resume(self, instance_id: str, actor: str = "system") -> Instance:
        """Leave PAUSED for the status held before pausing."""
        async with self._leases.lease(instance_id):
            instance = self._store.require_instance(instance_id)
            if instance.status != InstanceStatus.PAUSED:
                raise InvalidStateError(f"Instance {instance_id} is not paused")
            target = instance.paused_from or InstanceStatus.RUNNING
            return self._lifecycle.transition(
                instance_id, target, action="INSTANCE_RESUME", actor=actor, paused_from=None
            )

    async def delete(self, instance_id: str, actor: str = "system") -> None:
        """Tear down the workload and remove the instance with its manifests.

        Raises
        ------
        AdapterFailureError
            If the adapter could not delete the workload. The instance is
            left in ERROR with the failure recorded.
        """
        async with self._leases.lease(instance_id):
            instance = self._lifecycle.transition(instance_id, InstanceStatus.DELETING, actor=actor)
            if instance.resource_ref:
                try:
                    adapter = self._registry.get(instance.deployment_type)
                    await asyncio.wait_for(
                        adapter.delete(ResourceRef.decode(instance.resource_ref), DeleteOptions()),
                        self._adapter_timeout,
                    )
                except Exception as exc:  # noqa: BLE001
                    message = f"Delete failed: {exc or type(exc).__name__}"
                    self._lifecycle.fail(instance_id, message, action="INSTANCE_DELETE_FAILED", actor=actor)
                    raise AdapterFailureError(message) from exc

            with self._store.transaction() as tx:
                tx.delete_instance(instance_id)
                tx.append_audit(
                    AuditEvent(
                        actor=actor,
                        action="INSTANCE_DELETE",
                        resource_id=instance_id,
                        workspace_id=instance.workspace_id,
                        diff_summary=f"Deleted instance {instance.name}",
                    )
                )
            logger.info("Deleted instance %s", instance_id)
