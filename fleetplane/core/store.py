"""Durable fleet store backed by SQLite.

Holds instances, the append-only manifest history, and the audit trail.
The store owns no business rules beyond referential integrity; callers
group writes that must land together inside ``transaction()``.

Design:
- ``BEGIN IMMEDIATE`` transactions: a writer takes the database write
  lock up front, so two transactions computing the next manifest version
  for the same instance serialize instead of colliding.
- UNIQUE(instance_id, version) on manifest_versions as a second guard.
- Manifest versions are insert-only; they disappear only with their instance.
- WAL journal mode for concurrent readers.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from fleetplane.core.errors import InvalidStateError, NotFoundError
from fleetplane.models.audit import AuditEvent
from fleetplane.models.instances import Instance, InstanceStatus
from fleetplane.models.manifests import ManifestVersion


# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_CREATE_INSTANCES = """
CREATE TABLE IF NOT EXISTS instances (
    id            TEXT PRIMARY KEY,
    name          TEXT NOT NULL,
    workspace_id  TEXT NOT NULL,
    fleet_id      TEXT NOT NULL,
    status        TEXT NOT NULL,
    updated_at    TEXT NOT NULL,
    data_json     TEXT NOT NULL
);
"""

_CREATE_MANIFESTS = """
CREATE TABLE IF NOT EXISTS manifest_versions (
    id            TEXT PRIMARY KEY,
    instance_id   TEXT NOT NULL REFERENCES instances(id) ON DELETE CASCADE,
    version       INTEGER NOT NULL CHECK (version >= 1),
    content_json  TEXT NOT NULL,
    description   TEXT,
    created_by    TEXT NOT NULL,
    created_at    TEXT NOT NULL,
    UNIQUE (instance_id, version)
);
"""

_CREATE_AUDIT = """
CREATE TABLE IF NOT EXISTS audit_events (
    seq            INTEGER PRIMARY KEY AUTOINCREMENT,
    id             TEXT NOT NULL UNIQUE,
    actor          TEXT NOT NULL,
    action         TEXT NOT NULL,
    resource_type  TEXT NOT NULL,
    resource_id    TEXT NOT NULL,
    workspace_id   TEXT,
    diff_summary   TEXT NOT NULL DEFAULT '',
    metadata_json  TEXT NOT NULL DEFAULT '{}',
    created_at     TEXT NOT NULL
);
"""

_CREATE_IDX_STATUS = """
CREATE INDEX IF NOT EXISTS idx_instances_status ON instances(status, updated_at);
"""

_CREATE_IDX_AUDIT = """
CREATE INDEX IF NOT EXISTS idx_audit_resource ON audit_events(resource_id, seq);
"""


def _ts(value: datetime) -> str:
    """Fixed-width UTC timestamp so string comparison matches time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


# ---------------------------------------------------------------------------
# Transaction handle
# ---------------------------------------------------------------------------


class StoreTransaction:
    """Write handle bound to one open transaction.

    Every method runs on the same connection, so all of them commit or
    roll back together.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    # Instances -----------------------------------------------------------

    def get_instance(self, instance_id: str) -> Instance | None:
        row = self._conn.execute(
            "SELECT data_json FROM instances WHERE id = ?", (instance_id,)
        ).fetchone()
        return Instance.model_validate_json(row[0]) if row else None

    def require_instance(self, instance_id: str) -> Instance:
        instance = self.get_instance(instance_id)
        if instance is None:
            raise NotFoundError(f"Instance not found: {instance_id}")
        return instance

    def insert_instance(self, instance: Instance) -> Instance:
        self._conn.execute(
            """
            INSERT INTO instances (id, name, workspace_id, fleet_id, status, updated_at, data_json)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                instance.id,
                instance.name,
                instance.workspace_id,
                instance.fleet_id,
                instance.status.value,
                _ts(instance.updated_at),
                instance.model_dump_json(),
            ),
        )
        return instance

    def update_instance(self, instance: Instance) -> Instance:
        """Replace the stored instance record.

        Raises
        ------
        NotFoundError
            If the instance does not exist.
        InvalidStateError
            If the desired manifest pointer names a manifest of another instance.
        """
        if instance.desired_manifest_id is not None:
            owner = self._conn.execute(
                "SELECT instance_id FROM manifest_versions WHERE id = ?",
                (instance.desired_manifest_id,),
            ).fetchone()
            if owner is None or owner[0] != instance.id:
                raise InvalidStateError(
                    f"Desired manifest {instance.desired_manifest_id} "
                    f"does not belong to instance {instance.id}"
                )
        cursor = self._conn.execute(
            """
            UPDATE instances
               SET name = ?, status = ?, updated_at = ?, data_json = ?
             WHERE id = ?
            """,
            (
                instance.name,
                instance.status.value,
                _ts(instance.updated_at),
                instance.model_dump_json(),
                instance.id,
            ),
        )
        if cursor.rowcount == 0:
            raise NotFoundError(f"Instance not found: {instance.id}")
        return instance

    def delete_instance(self, instance_id: str) -> None:
        """Delete an instance together with its manifest history."""
        self._conn.execute(
            "DELETE FROM manifest_versions WHERE instance_id = ?", (instance_id,)
        )
        self._conn.execute("DELETE FROM instances WHERE id = ?", (instance_id,))

    # Manifests -----------------------------------------------------------

    def next_manifest_version(self, instance_id: str) -> int:
        row = self._conn.execute(
            "SELECT COALESCE(MAX(version), 0) FROM manifest_versions WHERE instance_id = ?",
            (instance_id,),
        ).fetchone()
        return int(row[0]) + 1

    def insert_manifest(self, manifest: ManifestVersion) -> ManifestVersion:
        self._conn.execute(
            """
            INSERT INTO manifest_versions
                (id, instance_id, version, content_json, description, created_by, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                manifest.id,
                manifest.instance_id,
                manifest.version,
                json.dumps(manifest.content, sort_keys=True),
                manifest.description,
                manifest.created_by,
                _ts(manifest.created_at),
            ),
        )
        return manifest

    # Audit ---------------------------------------------------------------

    def append_audit(self, event: AuditEvent) -> AuditEvent:
        self._conn.execute(
            """
            INSERT INTO audit_events
                (id, actor, action, resource_type, resource_id, workspace_id,
                 diff_summary, metadata_json, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.id,
                event.actor,
                event.action,
                event.resource_type,
                event.resource_id,
                event.workspace_id,
                event.diff_summary,
                json.dumps(event.metadata, sort_keys=True, default=str),
                _ts(event.created_at),
            ),
        )
        return event


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class FleetStore:
    """SQLite-backed store for instances, manifest versions, and audit events.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file. Created if it does not exist.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    @property
    def path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        # Autocommit mode; transactions are opened explicitly.
        conn = sqlite3.connect(
            str(self._db_path),
            check_same_thread=False,
            timeout=30.0,
            isolation_level=None,
        )
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    def _init_schema(self) -> None:
        conn = self._connect()
        try:
            conn.execute(_CREATE_INSTANCES)
            conn.execute(_CREATE_MANIFESTS)
            conn.execute(_CREATE_AUDIT)
            conn.execute(_CREATE_IDX_STATUS)
            conn.execute(_CREATE_IDX_AUDIT)
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[StoreTransaction]:
        """Open a write transaction; commit on success, roll back on any error."""
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield StoreTransaction(conn)
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    @contextmanager
    def _read(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Instances
    # ------------------------------------------------------------------

    def create_instance(self, instance: Instance) -> Instance:
        with self.transaction() as tx:
            return tx.insert_instance(instance)

    def update_instance(self, instance: Instance) -> Instance:
        with self.transaction() as tx:
            return tx.update_instance(instance)

    def get_instance(self, instance_id: str) -> Instance | None:
        with self._read() as conn:
            return StoreTransaction(conn).get_instance(instance_id)

    def require_instance(self, instance_id: str) -> Instance:
        """Return the instance or raise ``NotFoundError``."""
        instance = self.get_instance(instance_id)
        if instance is None:
            raise NotFoundError(f"Instance not found: {instance_id}")
        return instance

    def list_instances(
        self, statuses: Iterable[InstanceStatus] | None = None
    ) -> list[Instance]:
        """Return instances, optionally filtered by status, oldest first."""
        query = "SELECT data_json FROM instances"
        params: list[str] = []
        if statuses is not None:
            wanted = [s.value for s in statuses]
            if not wanted:
                return []
            query += f" WHERE status IN ({', '.join('?' for _ in wanted)})"
            params.extend(wanted)
        query += " ORDER BY rowid ASC"
        with self._read() as conn:
            rows = conn.execute(query, params).fetchall()
        return [Instance.model_validate_json(row[0]) for row in rows]

    def list_stale(
        self, statuses: Iterable[InstanceStatus], older_than: datetime
    ) -> list[Instance]:
        """Return instances in *statuses* whose updated_at precedes *older_than*."""
        wanted = [s.value for s in statuses]
        if not wanted:
            return []
        placeholders = ", ".join("?" for _ in wanted)
        with self._read() as conn:
            rows = conn.execute(
                f"SELECT data_json FROM instances "
                f"WHERE status IN ({placeholders}) AND updated_at < ? "
                f"ORDER BY updated_at ASC",
                [*wanted, _ts(older_than)],
            ).fetchall()
        return [Instance.model_validate_json(row[0]) for row in rows]

    # ------------------------------------------------------------------
    # Manifest versions (insert happens inside a transaction only)
    # ------------------------------------------------------------------

    def list_manifests(self, instance_id: str) -> list[ManifestVersion]:
        """All versions for an instance, newest first."""
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM manifest_versions WHERE instance_id = ? ORDER BY version DESC",
                (instance_id,),
            ).fetchall()
        return [self._row_to_manifest(row) for row in rows]

    def latest_manifest(self, instance_id: str) -> ManifestVersion | None:
        """The version with the highest number, regardless of insertion order."""
        with self._read() as conn:
            row = conn.execute(
                "SELECT * FROM manifest_versions WHERE instance_id = ? "
                "ORDER BY version DESC LIMIT 1",
                (instance_id,),
            ).fetchone()
        return self._row_to_manifest(row) if row else None

    def get_manifest(self, manifest_id: str) -> ManifestVersion | None:
        with self._read() as conn:
            row = conn.execute(
                "SELECT * FROM manifest_versions WHERE id = ?", (manifest_id,)
            ).fetchone()
        return self._row_to_manifest(row) if row else None

    def get_manifest_version(self, instance_id: str, version: int) -> ManifestVersion | None:
        with self._read() as conn:
            row = conn.execute(
                "SELECT * FROM manifest_versions WHERE instance_id = ? AND version = ?",
                (instance_id, version),
            ).fetchone()
        return self._row_to_manifest(row) if row else None

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def append_audit(self, event: AuditEvent) -> AuditEvent:
        with self.transaction() as tx:
            return tx.append_audit(event)

    def list_audit(self, resource_id: str | None = None) -> list[AuditEvent]:
        """Audit events in append order, optionally for one resource."""
        query = "SELECT * FROM audit_events"
        params: tuple[str, ...] = ()
        if resource_id is not None:
            query += " WHERE resource_id = ?"
            params = (resource_id,)
        query += " ORDER BY seq ASC"
        with self._read() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_audit(row) for row in rows]

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_manifest(row: tuple) -> ManifestVersion:
        return ManifestVersion(
            id=row[0],
            instance_id=row[1],
            version=row[2],
            content=json.loads(row[3]),
            description=row[4],
            created_by=row[5],
            created_at=datetime.fromisoformat(row[6]),
        )

    @staticmethod
    def _row_to_audit(row: tuple) -> AuditEvent:
        return AuditEvent(
            id=row[1],
            actor=row[2],
            action=row[3],
            resource_type=row[4],
            resource_id=row[5],
            workspace_id=row[6],
            diff_summary=row[7],
            metadata=json.loads(row[8]),
            created_at=datetime.fromisoformat(row[9]),
        )
