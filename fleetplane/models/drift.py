"""Drift check results. Surfaced through logs and the CLI, not persisted."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class DriftAssessment(str, Enum):
    IN_SYNC = "in_sync"
    DRIFTED = "drifted"
    UNKNOWN = "unknown"  # gateway unreachable or protocol failure; never counted as drift


class DriftResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    instance_id: str
    assessment: DriftAssessment
    desired_hash: str | None = None
    live_hash: str | None = None
    diff: dict[str, Any] | None = None
    error: str | None = None
    checked_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def has_drift(self) -> bool | None:
        """True or False when assessed, None when the check could not complete."""
        if self.assessment == DriftAssessment.UNKNOWN:
            return None
        return self.assessment == DriftAssessment.DRIFTED
