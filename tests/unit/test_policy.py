"""Tests for the PolicyEngine — schema and policy rules."""

from __future__ import annotations

import pytest

from fleetplane.core.policy import PolicyEngine, image_is_pinned
from fleetplane.models.policy import Severity


@pytest.fixture
def policy() -> PolicyEngine:
    return PolicyEngine()


def _codes(result) -> list[str]:
    return [v.code for v in result.violations]


class TestImagePinning:
    @pytest.mark.parametrize(
        "image",
        ["agent:1.2.3", "ghcr.io/org/agent:2024-01-01", "agent@sha256:abc123", "localhost:5000/agent:v1"],
    )
    def test_pinned(self, image: str):
        assert image_is_pinned(image)

    @pytest.mark.parametrize("image", ["agent", "agent:latest", "localhost:5000/agent", "agent:"])
    def test_unpinned(self, image: str):
        assert not image_is_pinned(image)


class TestPolicyEngine:
    def test_valid_manifest(self, policy, manifest_content):
        result = policy.validate(manifest_content())
        assert result.valid is True
        assert result.violations == []

    def test_schema_invalid_returned_alone(self, policy, manifest_content):
        content = manifest_content(metadata={"name": "Not A Valid Name"})
        content["spec"]["runtime"]["image"] = "agent:latest"
        result = policy.validate(content)
        assert result.valid is False
        assert set(_codes(result)) == {"SCHEMA_INVALID"}
        assert result.violations[0].path == "metadata.name"

    def test_unknown_field_rejected(self, policy, manifest_content):
        result = policy.validate(manifest_content(spec={"surprise": True}))
        assert _codes(result) == ["SCHEMA_INVALID"]

    def test_unpinned_image(self, policy, manifest_content):
        content = manifest_content()
        content["spec"]["runtime"]["image"] = "ghcr.io/example/agent:latest"
        result = policy.validate(content)
        assert result.valid is False
        assert _codes(result) == ["UNPINNED_IMAGE"]
        assert result.violations[0].path == "spec.runtime.image"

    def test_empty_skills_allowlist(self, policy, manifest_content):
        result = policy.validate(manifest_content(spec={"skills": {"mode": "ALLOWLIST", "allowlist": []}}))
        assert _codes(result) == ["NO_SKILLS_ALLOWED"]

    def test_webhook_without_verify_token(self, policy, manifest_content):
        content = manifest_content(
            spec={
                "network": {"inbound": "WEBHOOK", "egress_preset": "RESTRICTED"},
                "channels": [{"type": "webhook", "secret_ref": "slack-token", "config": {}}],
            }
        )
        assert _codes(policy.validate(content)) == ["WEBHOOK_NO_TOKEN"]

    def test_webhook_with_verify_token(self, policy, manifest_content):
        content = manifest_content(
            spec={
                "network": {"inbound": "WEBHOOK", "egress_preset": "RESTRICTED"},
                "channels": [
                    {"type": "webhook", "secret_ref": "slack-token", "config": {"verify_token": "t"}}
                ],
            }
        )
        assert policy.validate(content).valid is True

    def test_public_inbound_forbidden(self, policy, manifest_content):
        content = manifest_content(spec={"network": {"inbound": "PUBLIC"}})
        assert "PUBLIC_ADMIN_FORBIDDEN" in _codes(policy.validate(content))

    def test_public_inbound_allowed_when_policy_off(self, policy, manifest_content):
        content = manifest_content(
            spec={"network": {"inbound": "PUBLIC"}, "policies": {"forbid_public_admin": False}}
        )
        assert policy.validate(content).valid is True

    def test_channels_without_secrets_is_warning(self, policy, manifest_content):
        result = policy.validate(manifest_content(spec={"secrets": []}))
        assert result.valid is True
        (warning,) = result.warnings
        assert warning.code == "CHANNELS_WITHOUT_SECRETS"
        assert warning.severity == Severity.WARNING

    def test_channel_secret_missing(self, policy, manifest_content):
        content = manifest_content(
            spec={"channels": [{"type": "telegram", "secret_ref": "telegram-token"}]}
        )
        result = policy.validate(content)
        assert result.valid is False
        assert _codes(result) == ["CHANNEL_SECRET_MISSING"]

    def test_disabled_channel_ignored(self, policy, manifest_content):
        content = manifest_content(
            spec={"channels": [{"type": "telegram", "enabled": False, "secret_ref": "nope"}]}
        )
        assert policy.validate(content).violations == []

    def test_permissive_egress_warning(self, policy, manifest_content):
        result = policy.validate(manifest_content(spec={"network": {"egress_preset": "DEFAULT"}}))
        assert result.valid is True
        assert _codes(result) == ["PERMISSIVE_EGRESS"]

    def test_violations_in_rule_order(self, policy, manifest_content):
        content = manifest_content(
            spec={
                "skills": {"allowlist": []},
                "network": {"inbound": "PUBLIC", "egress_preset": "DEFAULT"},
            }
        )
        content["spec"]["runtime"]["image"] = "agent"
        assert _codes(policy.validate(content)) == [
            "UNPINNED_IMAGE",
            "NO_SKILLS_ALLOWED",
            "PUBLIC_ADMIN_FORBIDDEN",
            "PERMISSIVE_EGRESS",
        ]

    def test_validation_is_deterministic(self, policy, manifest_content):
        content = manifest_content(spec={"network": {"egress_preset": "DEFAULT"}})
        assert policy.validate(content) == policy.validate(content)
