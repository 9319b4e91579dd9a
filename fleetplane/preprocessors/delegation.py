"""Delegation config injector.

Agents that can hand work to team members need the runtime tool group
and the shared skills directory. The injection only happens when the
instance actually has delegation targets configured.
"""

from __future__ import annotations

from typing import Any

from fleetplane.models.reconcile import PreprocessorResult
from fleetplane.preprocessors.base import PreprocessorContext
from fleetplane.preprocessors.merge import append_unique, ensure_section, grant_permission

RUNTIME_TOOL_GROUP = "group:runtime"
SHARED_SKILLS_DIR = "/home/node/.agent/skills"


class DelegationConfigPreprocessor:
    """Grants delegation tooling to instances with delegation targets."""

    name = "delegation-config"
    priority = 50

    def __init__(self, skills_dir: str = SHARED_SKILLS_DIR) -> None:
        self._skills_dir = skills_dir

    def process(self, config: dict[str, Any], context: PreprocessorContext) -> PreprocessorResult:
        if not context.has_delegation_targets:
            return PreprocessorResult(modified=False, description="No delegation targets")

        changes: list[str] = []

        granted = grant_permission(ensure_section(config, "tools"), RUNTIME_TOOL_GROUP)
        if granted:
            changes.append(f"added {RUNTIME_TOOL_GROUP} to tools.{granted}")

        load = ensure_section(config, "skills", "load")
        if append_unique(load, "extra_dirs", self._skills_dir):
            changes.append(f"added {self._skills_dir} to skills.load.extra_dirs")

        if not changes:
            return PreprocessorResult(modified=False, description="Delegation config already present")
        return PreprocessorResult(modified=True, description="; ".join(changes))
