"""Mirror policy documents (ICSP / IDMS) decoded into mirror rules.

Both OpenShift resources map a source registry or repository prefix to an
ordered list of mirrors; only their field names differ. Each kind has its own
decoder, and both produce the same :class:`MirrorRule` values so that the
matching code never needs to know where a rule came from.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from importlib import resources
from pathlib import Path
from typing import Any

import jsonschema
import yaml

from bundle_tool.registry.parser import DEFAULT_REGISTRY, OFFICIAL_NAMESPACE

logger = logging.getLogger(__name__)

_DOCKER_HUB_ALIASES = ("index.docker.io",)


class PolicyKind(str, Enum):
    """Supported mirror policy resource kinds."""

    ICSP = "ImageContentSourcePolicy"
    IDMS = "ImageDigestMirrorSet"


# kind -> (schema file, name of the mirror list under ``spec``)
_DECODERS: dict[PolicyKind, tuple[str, str]] = {
    PolicyKind.ICSP: ("imagecontentsourcepolicy.schema.json", "repositoryDigestMirrors"),
    PolicyKind.IDMS: ("imagedigestmirrorset.schema.json", "imageDigestMirrors"),
}


class MirrorPolicyError(Exception):
    """Base class for mirror policy loading failures."""


class PolicyFileError(MirrorPolicyError):
    """Raised when a policy file cannot be read."""


class PolicyParseError(MirrorPolicyError):
    """Raised when a policy file is not valid YAML."""


class UnsupportedPolicyKindError(MirrorPolicyError):
    """Raised when a policy document has an unexpected ``kind``."""

    def __init__(self, path: str, kind: str | None) -> None:
        self.path = path
        self.kind = kind
        super().__init__(
            f"unsupported mirror policy kind in {path}: {kind} "
            f"(expected {PolicyKind.ICSP.value} or {PolicyKind.IDMS.value})"
        )


class InvalidPolicyError(MirrorPolicyError):
    """Raised when a policy document does not match its schema."""


@dataclass(frozen=True)
class MirrorRule:
    """A source prefix and the mirrors that serve it.

    Attributes:
        source: Registry (``registry.redhat.io``) or repository prefix
            (``registry.redhat.io/ubi8``).
        mirrors: Mirrors in preference order; never empty.
    """

    source: str
    mirrors: tuple[str, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "source", normalize_source(self.source))

    @property
    def is_registry_only(self) -> bool:
        return "/" not in self.source

    @property
    def prefixes(self) -> tuple[str, ...]:
        """Return the ``registry/repository`` prefixes this source matches.

        A single-segment Docker Hub source such as ``docker.io/nginx`` names
        either a namespace or an official image, so it also matches
        ``docker.io/library/nginx``.
        """
        registry, _, path = self.source.partition("/")
        if registry == DEFAULT_REGISTRY and path and "/" not in path and path != OFFICIAL_NAMESPACE:
            return (self.source, f"{registry}/{OFFICIAL_NAMESPACE}/{path}")
        return (self.source,)


def normalize_source(source: str) -> str:
    """Rewrite the legacy ``index.docker.io`` registry name to ``docker.io``."""
    registry, sep, path = source.partition("/")
    if registry in _DOCKER_HUB_ALIASES:
        return f"{DEFAULT_REGISTRY}{sep}{path}"
    return source


@dataclass(frozen=True)
class MirrorPolicy:
    """A loaded policy document."""

    kind: PolicyKind
    name: str
    path: str
    rules: tuple[MirrorRule, ...]

    @property
    def mirror_count(self) -> int:
        return sum(len(rule.mirrors) for rule in self.rules)


def load_policy(path: str | Path, kind: PolicyKind | None = None) -> MirrorPolicy:
    """Read a policy file and decode it.

    Args:
        path: Path to a YAML ICSP or IDMS document.
        kind: If given, the document must be of this kind.

    Returns:
        The decoded :class:`MirrorPolicy`.

    Raises:
        PolicyFileError: If the file cannot be read.
        PolicyParseError: If the file is not a YAML mapping.
        UnsupportedPolicyKindError: If ``kind`` is missing, unknown, or not
            the expected one.
        InvalidPolicyError: If the document does not match its schema.
    """
    document = read_policy_document(path)
    detected = detect_kind(document, str(path))
    if kind is not None and detected is not kind:
        raise UnsupportedPolicyKindError(str(path), detected.value)
    return decode_policy(document, detected, str(path))


def read_policy_document(path: str | Path) -> dict[str, Any]:
    """Load the raw YAML mapping from ``path``."""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise PolicyFileError(f"failed to read mirror policy file {path}: {exc}") from exc

    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise PolicyParseError(f"failed to parse YAML from {path}: {exc}") from exc

    if not isinstance(document, dict):
        raise PolicyParseError(f"failed to parse YAML from {path}: expected a mapping")
    return document


def detect_kind(document: dict[str, Any], path: str = "<document>") -> PolicyKind:
    """Return the policy kind named by the document's ``kind`` field."""
    raw_kind = document.get("kind")
    try:
        return PolicyKind(raw_kind)
    except ValueError:
        raise UnsupportedPolicyKindError(path, raw_kind) from None


def decode_policy(
    document: dict[str, Any],
    kind: PolicyKind,
    path: str = "<document>",
) -> MirrorPolicy:
    """Validate ``document`` against the schema for ``kind`` and build its rules."""
    schema_file, list_field = _DECODERS[kind]
    try:
        jsonschema.validate(instance=document, schema=_load_schema(schema_file))
    except jsonschema.ValidationError as exc:
        raise InvalidPolicyError(
            f"{kind.value} in {path} failed schema validation: {exc.message}"
        ) from exc

    entries = (document.get("spec") or {}).get(list_field) or []
    rules: list[MirrorRule] = []
    for entry in entries:
        source = entry["source"].rstrip("/")
        mirrors = tuple(entry.get("mirrors") or ())
        if not source or not mirrors:
            logger.debug("Ignoring %s entry %r with no mirrors", kind.value, entry)
            continue
        rules.append(MirrorRule(source=source, mirrors=mirrors))

    metadata = document.get("metadata") or {}
    return MirrorPolicy(
        kind=kind,
        name=str(metadata.get("name", "")),
        path=path,
        rules=tuple(rules),
    )


def _load_schema(schema_file: str) -> dict[str, Any]:
    """Load a JSON Schema file from the ``bundle_tool.schemas`` package."""
    schema_ref = resources.files("bundle_tool.schemas").joinpath(schema_file)
    return json.loads(schema_ref.read_text(encoding="utf-8"))  # type: ignore[no-any-return]
