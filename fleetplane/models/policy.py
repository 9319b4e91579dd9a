"""Policy validation results. Transient; never persisted."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class Severity(str, Enum):
    ERROR = "ERROR"      # blocks manifest creation
    WARNING = "WARNING"  # reported, does not block


class PolicyViolation(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    severity: Severity = Severity.ERROR
    path: str | None = None

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class PolicyResult(BaseModel):
    """Outcome of validating one manifest document."""

    model_config = ConfigDict(frozen=True)

    valid: bool
    violations: list[PolicyViolation] = Field(default_factory=list)

    @property
    def errors(self) -> list[PolicyViolation]:
        return [v for v in self.violations if v.severity == Severity.ERROR]

    @property
    def warnings(self) -> list[PolicyViolation]:
        return [v for v in self.violations if v.severity == Severity.WARNING]
