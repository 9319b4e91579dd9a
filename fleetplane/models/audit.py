"""Append-only audit event record."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class AuditEvent(BaseModel):
    """One entry in the audit trail.

    Written in the same transaction as the state change it describes so
    the trail never disagrees with the data it audits.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"aud-{uuid.uuid4().hex[:12]}")
    actor: str = "system"
    action: str
    resource_type: str = "Instance"
    resource_id: str
    workspace_id: str | None = None
    diff_summary: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
