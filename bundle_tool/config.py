"""Runtime configuration: provenance parsing limits and mirror policy options."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import TYPE_CHECKING, Mapping

if TYPE_CHECKING:
    from bundle_tool.resolver.policy import MirrorPolicy
    from bundle_tool.resolver.resolver import ImageResolver

logger = logging.getLogger(__name__)

MIB = 1024 * 1024

DEFAULT_MAX_ATTESTATIONS = 50
MAX_ATTESTATIONS_LIMIT = 1000
DEFAULT_MAX_PAYLOAD_SIZE = 10 * MIB
MAX_PAYLOAD_SIZE_LIMIT = 100 * MIB
DEFAULT_PROCESSING_TIMEOUT = 30.0
MIN_PROCESSING_TIMEOUT = 1.0
MAX_PROCESSING_TIMEOUT = 300.0

ENV_MAX_ATTESTATIONS = "BUNDLE_TOOL_MAX_ATTESTATIONS"
ENV_MAX_PAYLOAD_SIZE = "BUNDLE_TOOL_MAX_PAYLOAD_SIZE"
ENV_PROCESSING_TIMEOUT = "BUNDLE_TOOL_PROCESSING_TIMEOUT"


@dataclass(frozen=True)
class ProvenanceLimits:
    """Bounds applied while parsing provenance attestations.

    Attributes:
        max_attestations: Attestations examined per image (1..1000).
        max_payload_size: Maximum payload size in bytes, before and after
            decoding (1 byte..100 MiB).
        processing_timeout: Seconds allowed per image, fetch included
            (1..300).

    Raises:
        ValueError: If any value is out of range.
    """

    max_attestations: int = DEFAULT_MAX_ATTESTATIONS
    max_payload_size: int = DEFAULT_MAX_PAYLOAD_SIZE
    processing_timeout: float = DEFAULT_PROCESSING_TIMEOUT

    def __post_init__(self) -> None:
        if not 1 <= self.max_attestations <= MAX_ATTESTATIONS_LIMIT:
            raise ValueError(
                f"max_attestations must be between 1 and {MAX_ATTESTATIONS_LIMIT}, "
                f"got {self.max_attestations}"
            )
        if not 1 <= self.max_payload_size <= MAX_PAYLOAD_SIZE_LIMIT:
            raise ValueError(
                f"max_payload_size must be between 1 and {MAX_PAYLOAD_SIZE_LIMIT} bytes, "
                f"got {self.max_payload_size}"
            )
        if not MIN_PROCESSING_TIMEOUT <= self.processing_timeout <= MAX_PROCESSING_TIMEOUT:
            raise ValueError(
                f"processing_timeout must be between {MIN_PROCESSING_TIMEOUT:g}s and "
                f"{MAX_PROCESSING_TIMEOUT:g}s, got {self.processing_timeout}"
            )

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> ProvenanceLimits:
        """Build limits from ``BUNDLE_TOOL_*`` environment variables.

        Unset variables keep their defaults.

        Raises:
            ValueError: If a variable is not a number or is out of range.
        """
        env = os.environ if environ is None else environ
        kwargs: dict[str, float | int] = {}
        if env.get(ENV_MAX_ATTESTATIONS):
            kwargs["max_attestations"] = _parse_number(env, ENV_MAX_ATTESTATIONS, int)
        if env.get(ENV_MAX_PAYLOAD_SIZE):
            kwargs["max_payload_size"] = _parse_number(env, ENV_MAX_PAYLOAD_SIZE, int)
        if env.get(ENV_PROCESSING_TIMEOUT):
            kwargs["processing_timeout"] = _parse_number(env, ENV_PROCESSING_TIMEOUT, float)
        return cls(**kwargs)  # type: ignore[arg-type]

    def replace(self, **overrides: float | int | None) -> ProvenanceLimits:
        """Return a copy with the non-None ``overrides`` applied."""
        values: dict[str, float | int] = {
            "max_attestations": self.max_attestations,
            "max_payload_size": self.max_payload_size,
            "processing_timeout": self.processing_timeout,
        }
        for key, value in overrides.items():
            if key not in values:
                raise TypeError(f"unknown limit: {key}")
            if value is not None:
                values[key] = value
        return ProvenanceLimits(**values)  # type: ignore[arg-type]


def _parse_number(env: Mapping[str, str], name: str, kind: type) -> float | int:
    raw = env[name]
    try:
        return kind(raw)  # type: ignore[no-any-return]
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


@dataclass(frozen=True)
class MirrorPolicyConfig:
    """Mirror policy options shared by commands.

    Attributes:
        mirror_policy_file: Path to an ICSP or IDMS document, or None.
    """

    mirror_policy_file: str | None = None


class MirrorPolicyLoader:
    """Load the configured mirror policy, if any, into an :class:`ImageResolver`."""

    def __init__(self, config: MirrorPolicyConfig) -> None:
        self.config = config

    def has_mirror_policy(self) -> bool:
        return bool(self.config.mirror_policy_file)

    def load_into(self, resolver: ImageResolver) -> MirrorPolicy | None:
        """Load the policy file into ``resolver``.

        Returns:
            The loaded policy, or None when no file is configured.

        Raises:
            MirrorPolicyError: If the file cannot be loaded.
        """
        if not self.config.mirror_policy_file:
            return None
        logger.debug("Loading mirror policy from %s", self.config.mirror_policy_file)
        return resolver.load_policy(self.config.mirror_policy_file)

    @property
    def description(self) -> str:
        if self.config.mirror_policy_file:
            return f"mirror policy: {self.config.mirror_policy_file}"
        return "no mirror policy"
