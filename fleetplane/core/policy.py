"""Policy engine — structural and policy validation of manifest documents.

``PolicyEngine.validate`` is a pure function of the document: it touches
no external state and the same content always yields the same violations,
in the same order.

Rules
-----
================================  ========  =====================================
Code                              Severity  Condition
================================  ========  =====================================
SCHEMA_INVALID                    ERROR     document does not match the schema
UNPINNED_IMAGE                    ERROR     image has no tag/digest or uses latest
NO_SKILLS_ALLOWED                 ERROR     empty skills allowlist
WEBHOOK_NO_TOKEN                  ERROR     webhook inbound without verify_token
PUBLIC_ADMIN_FORBIDDEN            ERROR     PUBLIC inbound while forbidden
CHANNELS_WITHOUT_SECRETS          WARNING   channels enabled but no secrets
CHANNEL_SECRET_MISSING            ERROR     secret_ref names no declared secret
PERMISSIVE_EGRESS                 WARNING   egress preset DEFAULT
================================  ========  =====================================
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from pydantic import ValidationError

from fleetplane.models.manifests import (
    ChannelType,
    EgressPreset,
    InboundMode,
    Manifest,
)
from fleetplane.models.policy import PolicyResult, PolicyViolation, Severity

logger = logging.getLogger(__name__)

Rule = Callable[[Manifest], list[PolicyViolation]]


def image_is_pinned(image: str) -> bool:
    """Whether *image* names an explicit tag (other than latest) or a digest."""
    if "@" in image:
        return True
    last_segment = image.rsplit("/", 1)[-1]
    if ":" not in last_segment:
        return False
    tag = last_segment.rsplit(":", 1)[1]
    return bool(tag) and tag != "latest"


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


def _check_image(manifest: Manifest) -> list[PolicyViolation]:
    image = manifest.spec.runtime.image
    if image_is_pinned(image):
        return []
    return [
        PolicyViolation(
            code="UNPINNED_IMAGE",
            message=f"Image '{image}' must be pinned to a version tag or digest, not latest",
            path="spec.runtime.image",
        )
    ]


def _check_skills(manifest: Manifest) -> list[PolicyViolation]:
    if manifest.spec.skills.allowlist:
        return []
    return [
        PolicyViolation(
            code="NO_SKILLS_ALLOWED",
            message="Skills allowlist must contain at least one skill",
            path="spec.skills.allowlist",
        )
    ]


def _check_webhook_token(manifest: Manifest) -> list[PolicyViolation]:
    if manifest.spec.network.inbound != InboundMode.WEBHOOK:
        return []
    violations = []
    for index, channel in enumerate(manifest.spec.channels):
        if (
            channel.type == ChannelType.WEBHOOK
            and channel.enabled
            and not channel.config.get("verify_token")
        ):
            violations.append(
                PolicyViolation(
                    code="WEBHOOK_NO_TOKEN",
                    message="Webhook channel requires a verify_token when inbound is WEBHOOK",
                    path=f"spec.channels[{index}].config.verify_token",
                )
            )
    return violations


def _check_public_admin(manifest: Manifest) -> list[PolicyViolation]:
    if (
        manifest.spec.policies.forbid_public_admin
        and manifest.spec.network.inbound == InboundMode.PUBLIC
    ):
        return [
            PolicyViolation(
                code="PUBLIC_ADMIN_FORBIDDEN",
                message="Public inbound access is forbidden by policies.forbid_public_admin",
                path="spec.network.inbound",
            )
        ]
    return []


def _check_channel_secrets(manifest: Manifest) -> list[PolicyViolation]:
    enabled = [c for c in manifest.spec.channels if c.enabled]
    if not enabled:
        return []
    declared = {secret.name for secret in manifest.spec.secrets}
    if not declared:
        if manifest.spec.policies.require_secret_manager:
            return [
                PolicyViolation(
                    code="CHANNELS_WITHOUT_SECRETS",
                    message="Channels are enabled but no secrets are declared for them",
                    severity=Severity.WARNING,
                    path="spec.secrets",
                )
            ]
        return []
    return [
        PolicyViolation(
            code="CHANNEL_SECRET_MISSING",
            message=f"Channel {channel.type.value} references undeclared secret '{channel.secret_ref}'",
            path="spec.channels",
        )
        for channel in enabled
        if channel.secret_ref not in declared
    ]


def _check_egress(manifest: Manifest) -> list[PolicyViolation]:
    if manifest.spec.network.egress_preset == EgressPreset.DEFAULT:
        return [
            PolicyViolation(
                code="PERMISSIVE_EGRESS",
                message="Egress preset DEFAULT allows unrestricted outbound traffic",
                severity=Severity.WARNING,
                path="spec.network.egress_preset",
            )
        ]
    return []


DEFAULT_RULES: tuple[Rule, ...] = (
    _check_image,
    _check_skills,
    _check_webhook_token,
    _check_public_admin,
    _check_channel_secrets,
    _check_egress,
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class PolicyEngine:
    """Validates manifest documents against the schema and policy rules.

    Parameters
    ----------
    rules:
        Ordered rule functions applied after schema validation. Defaults
        to ``DEFAULT_RULES``.

    Examples
    --------
    >>> engine = PolicyEngine()
    >>> result = engine.validate({"metadata": {}})
    >>> result.valid
    False
    >>> result.violations[0].code
    'SCHEMA_INVALID'
    """

    def __init__(self, rules: tuple[Rule, ...] | None = None) -> None:
        self._rules = rules if rules is not None else DEFAULT_RULES

    def parse(self, content: dict[str, Any]) -> Manifest:
        """Parse *content* into a ``Manifest``; raises pydantic ``ValidationError``."""
        return Manifest.model_validate(content)

    def validate(self, content: dict[str, Any]) -> PolicyResult:
        """Validate a manifest document.

        Returns
        -------
        PolicyResult
            ``valid`` is True iff no ERROR-severity violation was found.
            Schema failures are returned alone; policy rules only run on
            documents that parse.
        """
        try:
            manifest = self.parse(content)
        except ValidationError as exc:
            violations = [
                PolicyViolation(
                    code="SCHEMA_INVALID",
                    message=error["msg"],
                    path=".".join(str(part) for part in error["loc"]) or None,
                )
                for error in exc.errors()
            ]
            return PolicyResult(valid=False, violations=violations)

        violations: list[PolicyViolation] = []
        for rule in self._rules:
            violations.extend(rule(manifest))

        valid = not any(v.severity == Severity.ERROR for v in violations)
        return PolicyResult(valid=valid, violations=violations)
