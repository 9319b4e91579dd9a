"""Instance lifecycle state machine.

Enforces:
- Valid status transitions only (VALID_TRANSITIONS table)
- Every status write refreshes ``updated_at`` (the stuck sweep keys off it)
- Failures bump the lifetime ``error_count`` and record ``last_error``
- Optional audit record written in the same transaction as the change
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from fleetplane.core.errors import InvalidTransitionError
from fleetplane.core.store import FleetStore, StoreTransaction
from fleetplane.models.audit import AuditEvent
from fleetplane.models.instances import (
    VALID_TRANSITIONS,
    Instance,
    InstanceStatus,
    LastError,
)

logger = logging.getLogger(__name__)


class InstanceStateMachine:
    """Validates and persists instance status transitions.

    Parameters
    ----------
    store:
        The fleet store the transitions are written to.
    """

    def __init__(self, store: FleetStore) -> None:
        self._store = store

    # ------------------------------------------------------------------
    # Pure helpers
    # ------------------------------------------------------------------

    @staticmethod
    def check(instance: Instance, target: InstanceStatus) -> None:
        """Raise ``InvalidTransitionError`` unless *target* is reachable."""
        allowed = VALID_TRANSITIONS.get(instance.status, set())
        if target not in allowed:
            raise InvalidTransitionError(
                f"Cannot transition {instance.id} from {instance.status.value} "
                f"to {target.value}. Allowed: {sorted(s.value for s in allowed)}"
            )

    def apply(self, instance: Instance, target: InstanceStatus, **updates: Any) -> Instance:
        """Return a copy of *instance* moved to *target* with *updates* applied."""
        self.check(instance, target)
        update = {"status": target, "updated_at": datetime.now(timezone.utc)}
        update.update(updates)
        return instance.model_copy(update=update)

    def failed(self, instance: Instance, message: str, stack: str | None = None) -> Instance:
        """Return a copy of *instance* in ERROR with the failure recorded.

        An instance already in ERROR stays there and records the newer
        failure in place.
        """
        recorded = {
            "last_error": LastError(message=message, stack=stack),
            "error_count": instance.error_count + 1,
        }
        if instance.status == InstanceStatus.ERROR:
            return instance.model_copy(
                update={**recorded, "updated_at": datetime.now(timezone.utc)}
            )
        return self.apply(instance, InstanceStatus.ERROR, **recorded)

    # ------------------------------------------------------------------
    # Persisted transitions
    # ------------------------------------------------------------------

    def transition(
        self,
        instance_id: str,
        target: InstanceStatus,
        *,
        action: str | None = None,
        actor: str = "system",
        diff_summary: str = "",
        **updates: Any,
    ) -> Instance:
        """Move an instance to *target* in one transaction and return it.

        When *action* is given an audit event is appended alongside.
        """
        with self._store.transaction() as tx:
            current = tx.require_instance(instance_id)
            moved = self.apply(current, target, **updates)
            self._write(tx, current, moved, action, actor, diff_summary)
        return moved

    def fail(
        self,
        instance_id: str,
        message: str,
        *,
        stack: str | None = None,
        action: str | None = None,
        actor: str = "system",
    ) -> Instance:
        """Move an instance to ERROR, recording *message* and bumping error_count."""
        with self._store.transaction() as tx:
            current = tx.require_instance(instance_id)
            moved = self.failed(current, message, stack)
            self._write(tx, current, moved, action, actor, message)
        logger.error("Instance %s -> error: %s", instance_id, message)
        return moved

    def _write(
        self,
        tx: StoreTransaction,
        before: Instance,
        after: Instance,
        action: str | None,
        actor: str,
        diff_summary: str,
    ) -> None:
        tx.update_instance(after)
        if action:
            tx.append_audit(
                AuditEvent(
                    actor=actor,
                    action=action,
                    resource_id=after.id,
                    workspace_id=after.workspace_id,
                    diff_summary=diff_summary
                    or f"{before.status.value} -> {after.status.value}",
                    metadata={"from": before.status.value, "to": after.status.value},
                )
            )
        logger.info(
            "Instance %s: %s -> %s", after.id, before.status.value, after.status.value
        )
