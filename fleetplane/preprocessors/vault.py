"""Vault config injector: every agent gets the secret-vault skill and tool group."""

from __future__ import annotations

from typing import Any

from fleetplane.models.reconcile import PreprocessorResult
from fleetplane.preprocessors.base import PreprocessorContext
from fleetplane.preprocessors.merge import append_unique, ensure_section, grant_permission

VAULT_TOOL_GROUP = "group:vault"
VAULT_SKILLS_DIR = "/home/node/.agent/vault-skills"


class VaultConfigPreprocessor:
    name = "vault-config"
    priority = 40

    def process(self, config: dict[str, Any], context: PreprocessorContext) -> PreprocessorResult:
        changes: list[str] = []

        granted = grant_permission(ensure_section(config, "tools"), VAULT_TOOL_GROUP)
        if granted:
            changes.append(f"added {VAULT_TOOL_GROUP} to tools.{granted}")

        if append_unique(ensure_section(config, "skills", "load"), "extra_dirs", VAULT_SKILLS_DIR):
            changes.append(f"added {VAULT_SKILLS_DIR} to skills.load.extra_dirs")

        return PreprocessorResult(modified=bool(changes), description="; ".join(changes))
