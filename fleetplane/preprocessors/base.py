"""Preprocessor protocol and the context handed to each step.

A preprocessor derives part of the effective configuration from the raw
desired manifest. It mutates the working configuration in place with an
additive merge, and reports what it did through a ``PreprocessorResult``.
Running a preprocessor on its own output must change nothing.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field

from fleetplane.models.reconcile import PreprocessorResult

DEFAULT_PRIORITY = 100


class PreprocessorContext(BaseModel):
    """Read-only facts about the instance being reconciled."""

    model_config = ConfigDict(frozen=True)

    instance_id: str
    instance_name: str = ""
    deployment_type: str = ""
    delegation_targets: list[str] = Field(default_factory=list)

    @property
    def has_delegation_targets(self) -> bool:
        return bool(self.delegation_targets)


@runtime_checkable
class Preprocessor(Protocol):
    """Protocol for effective-configuration transforms.

    Any object with ``name``, ``priority`` and a ``process(config, context)``
    method satisfies this protocol. Lower priority runs first.
    """

    name: str
    priority: int

    def process(self, config: dict[str, Any], context: PreprocessorContext) -> PreprocessorResult:
        """Transform *config* in place and describe the change."""
        ...
