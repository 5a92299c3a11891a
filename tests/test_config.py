"""Tests for runtime configuration."""

from unittest.mock import MagicMock

import pytest

from bundle_tool.config import (
    ENV_MAX_ATTESTATIONS,
    ENV_MAX_PAYLOAD_SIZE,
    ENV_PROCESSING_TIMEOUT,
    MIB,
    MirrorPolicyConfig,
    MirrorPolicyLoader,
    ProvenanceLimits,
)


class TestProvenanceLimits:
    def test_defaults(self):
        limits = ProvenanceLimits()
        assert limits.max_attestations == 50
        assert limits.max_payload_size == 10 * MIB
        assert limits.processing_timeout == 30.0

    def test_bounds_are_inclusive(self):
        ProvenanceLimits(max_attestations=1, max_payload_size=1, processing_timeout=1)
        ProvenanceLimits(max_attestations=1000, max_payload_size=100 * MIB, processing_timeout=300)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_attestations": 0},
            {"max_attestations": 1001},
            {"max_payload_size": 0},
            {"max_payload_size": 100 * MIB + 1},
            {"processing_timeout": 0.5},
            {"processing_timeout": 301},
        ],
    )
    def test_out_of_range(self, kwargs):
        with pytest.raises(ValueError):
            ProvenanceLimits(**kwargs)

    def test_from_env(self):
        limits = ProvenanceLimits.from_env(
            {
                ENV_MAX_ATTESTATIONS: "10",
                ENV_MAX_PAYLOAD_SIZE: str(2 * MIB),
                ENV_PROCESSING_TIMEOUT: "12.5",
            }
        )
        assert limits == ProvenanceLimits(
            max_attestations=10, max_payload_size=2 * MIB, processing_timeout=12.5
        )

    def test_from_env_ignores_unset_and_empty(self):
        assert ProvenanceLimits.from_env({ENV_MAX_ATTESTATIONS: ""}) == ProvenanceLimits()

    def test_from_env_reads_os_environ(self, monkeypatch):
        monkeypatch.setenv(ENV_MAX_ATTESTATIONS, "7")
        assert ProvenanceLimits.from_env().max_attestations == 7

    def test_from_env_not_a_number(self):
        with pytest.raises(ValueError, match=ENV_MAX_ATTESTATIONS):
            ProvenanceLimits.from_env({ENV_MAX_ATTESTATIONS: "many"})

    def test_from_env_out_of_range(self):
        with pytest.raises(ValueError, match="processing_timeout"):
            ProvenanceLimits.from_env({ENV_PROCESSING_TIMEOUT: "900"})

    def test_replace_skips_none(self):
        limits = ProvenanceLimits(max_attestations=5).replace(
            max_attestations=None, processing_timeout=60
        )
        assert limits.max_attestations == 5
        assert limits.processing_timeout == 60

    def test_replace_unknown_key(self):
        with pytest.raises(TypeError):
            ProvenanceLimits().replace(workers=4)


class TestMirrorPolicyLoader:
    def test_without_policy(self):
        loader = MirrorPolicyLoader(MirrorPolicyConfig())
        resolver = MagicMock()
        assert loader.has_mirror_policy() is False
        assert loader.load_into(resolver) is None
        resolver.load_policy.assert_not_called()
        assert loader.description == "no mirror policy"

    def test_with_policy(self):
        loader = MirrorPolicyLoader(MirrorPolicyConfig(mirror_policy_file="idms.yaml"))
        resolver = MagicMock()
        resolver.load_policy.return_value = "policy"
        assert loader.has_mirror_policy() is True
        assert loader.load_into(resolver) == "policy"
        resolver.load_policy.assert_called_once_with("idms.yaml")
        assert loader.description == "mirror policy: idms.yaml"
