"""Preprocessor and reconcile outcome models."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from fleetplane.models.instances import InstanceStatus


class PreprocessorResult(BaseModel):
    """What one preprocessor did to the working configuration."""

    model_config = ConfigDict(frozen=True)

    modified: bool
    description: str = ""


class PipelineStep(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    priority: int
    result: PreprocessorResult
    failed: bool = False


class ChainResult(BaseModel):
    """Outcome of one full preprocessor pipeline run."""

    model_config = ConfigDict(frozen=True)

    config: dict[str, Any]
    steps: list[PipelineStep] = Field(default_factory=list)

    @property
    def modification_count(self) -> int:
        return sum(1 for step in self.steps if step.result.modified)

    @property
    def changes(self) -> list[str]:
        return [
            f"{step.name}: {step.result.description}"
            for step in self.steps
            if step.result.modified
        ]

    @property
    def failures(self) -> list[str]:
        return [step.name for step in self.steps if step.failed]


class ReconcileResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    instance_id: str
    success: bool
    status: InstanceStatus
    config_fingerprint: str | None = None
    resource_ref: str | None = None
    error: str | None = None
    chain: ChainResult | None = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None
