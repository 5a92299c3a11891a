"""Classify SLSA provenance statements and extract their build facts.

Two incompatible predicate layouts are in use:

* SLSA v0.1 / v0.2: ``materials`` and ``recipe`` (``arguments``,
  ``environment``).
* SLSA v1.0: ``buildDefinition.resolvedDependencies`` and
  ``buildDefinition.externalParameters``.

Tekton Chains puts ``invocation.environment.labels`` on both.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Union

from bundle_tool.provenance.errors import AttestationFormatError, NotSLSAProvenanceError

logger = logging.getLogger(__name__)

SLSA_PREDICATE_TYPES = frozenset(
    {
        "https://slsa.dev/provenance/v0.1",
        "https://slsa.dev/provenance/v0.2",
        "https://slsa.dev/provenance/v1",
        "slsaprovenance",
    }
)

LABEL_COMPONENT = "appstudio.openshift.io/component"
LABEL_APPLICATION = "appstudio.openshift.io/application"
LABEL_NAMESPACE = "appstudio.openshift.io/namespace"

_GIT_URI_MARKER = "git+"
_COMMIT_DIGEST_ALGORITHM = "sha1"

#: A value of a free-form parameter map (``externalParameters``,
#: ``recipe.arguments``, ``recipe.environment``). Only strings are harvested.
ParameterValue = Union[str, int, float, bool, None, Dict[str, Any], List[Any]]


class SLSAVersion(str, Enum):
    V0_1 = "v0.1"
    V1_0 = "v1.0"


@dataclass(frozen=True)
class ResourceDescriptor:
    """A material (v0.1) or resolved dependency (v1.0)."""

    uri: str
    digest: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class SLSAAttestation:
    """The fields of an in-toto statement that provenance extraction reads.

    Covers both predicate layouts; fields absent from the statement are empty.
    """

    predicate_type: str
    builder_id: str = ""
    run_details_builder_id: str = ""
    labels: Mapping[str, str] = field(default_factory=dict)
    # v1.0
    resolved_dependencies: tuple[ResourceDescriptor, ...] = ()
    external_parameters: Mapping[str, ParameterValue] = field(default_factory=dict)
    # v0.1 / v0.2
    materials: tuple[ResourceDescriptor, ...] = ()
    recipe_arguments: Mapping[str, ParameterValue] = field(default_factory=dict)
    recipe_environment: Mapping[str, ParameterValue] = field(default_factory=dict)

    @classmethod
    def from_statement(cls, statement: Any) -> SLSAAttestation:
        """Build an attestation from a decoded in-toto statement.

        Raises:
            AttestationFormatError: If the statement's structure is invalid.
        """
        if not isinstance(statement, dict):
            raise AttestationFormatError("attestation statement is not a JSON object")

        predicate_type = statement.get("predicateType", "")
        if not isinstance(predicate_type, str):
            raise AttestationFormatError("predicateType must be a string")

        predicate = _mapping(statement.get("predicate"), "predicate")
        build_definition = _mapping(predicate.get("buildDefinition"), "predicate.buildDefinition")
        invocation = _mapping(predicate.get("invocation"), "predicate.invocation")
        environment = _mapping(invocation.get("environment"), "predicate.invocation.environment")
        recipe = _mapping(predicate.get("recipe"), "predicate.recipe")
        run_details = _mapping(predicate.get("runDetails"), "predicate.runDetails")

        labels = _mapping(environment.get("labels"), "predicate.invocation.environment.labels")

        return cls(
            predicate_type=predicate_type,
            builder_id=_builder_id(predicate, "predicate.builder"),
            run_details_builder_id=_builder_id(run_details, "predicate.runDetails.builder"),
            labels={k: v for k, v in labels.items() if isinstance(v, str)},
            resolved_dependencies=_descriptors(
                build_definition.get("resolvedDependencies"),
                "predicate.buildDefinition.resolvedDependencies",
            ),
            external_parameters=_mapping(
                build_definition.get("externalParameters"),
                "predicate.buildDefinition.externalParameters",
            ),
            materials=_descriptors(predicate.get("materials"), "predicate.materials"),
            recipe_arguments=_mapping(recipe.get("arguments"), "predicate.recipe.arguments"),
            recipe_environment=_mapping(recipe.get("environment"), "predicate.recipe.environment"),
        )


@dataclass
class ExtractedProvenance:
    """Build facts pulled from one attestation."""

    version: SLSAVersion
    source_repo: str = ""
    source_commit: str = ""
    build_platform: str = ""
    component_name: str = ""
    application_name: str = ""
    namespace: str = ""
    metadata: dict[str, str] = field(default_factory=dict)


# ----------------------------------------------------------------------
# Classification
# ----------------------------------------------------------------------


def is_slsa_provenance(attestation: SLSAAttestation) -> bool:
    return attestation.predicate_type in SLSA_PREDICATE_TYPES


def classify(attestation: SLSAAttestation) -> SLSAVersion:
    """Return the predicate layout of ``attestation``.

    Raises:
        NotSLSAProvenanceError: If the predicate type is not SLSA provenance.
    """
    if not is_slsa_provenance(attestation):
        raise NotSLSAProvenanceError(attestation.predicate_type)
    if attestation.resolved_dependencies or attestation.external_parameters:
        return SLSAVersion.V1_0
    return SLSAVersion.V0_1


# ----------------------------------------------------------------------
# Extraction
# ----------------------------------------------------------------------


def extract(
    attestation: SLSAAttestation,
    version: SLSAVersion | None = None,
) -> ExtractedProvenance:
    """Extract source, naming labels, builder and metadata from ``attestation``.

    Args:
        attestation: A SLSA provenance attestation.
        version: Layout to read; classified from the attestation if omitted.

    Returns:
        A fresh :class:`ExtractedProvenance`.

    Raises:
        NotSLSAProvenanceError: If ``version`` is omitted and the attestation
            is not SLSA provenance.
    """
    if version is None:
        version = classify(attestation)
    logger.debug("Extracting SLSA %s provenance", version.value)

    result = ExtractedProvenance(
        version=version,
        build_platform=attestation.builder_id or attestation.run_details_builder_id,
    )

    if version is SLSAVersion.V1_0:
        _apply_git_source(result, attestation.resolved_dependencies)
        _apply_labels(result, (attestation.labels,))
        result.metadata.update(_string_values(attestation.external_parameters))
    else:
        _apply_git_source(result, attestation.materials)
        _apply_labels(
            result,
            (attestation.labels, attestation.recipe_environment, attestation.recipe_arguments),
        )
        result.metadata.update(_string_values(attestation.recipe_environment))
        result.metadata.update(_string_values(attestation.recipe_arguments))
    return result


def _apply_git_source(
    result: ExtractedProvenance,
    descriptors: tuple[ResourceDescriptor, ...],
) -> None:
    for descriptor in descriptors:
        logger.debug("Checking source candidate %s", descriptor.uri)
        if _GIT_URI_MARKER in descriptor.uri:
            result.source_repo = descriptor.uri
            result.source_commit = descriptor.digest.get(_COMMIT_DIGEST_ALGORITHM, "")
            return


def _apply_labels(
    result: ExtractedProvenance,
    sources: tuple[Mapping[str, Any], ...],
) -> None:
    """Fill each naming field from the first source holding a non-empty string."""
    for attr, key in (
        ("component_name", LABEL_COMPONENT),
        ("application_name", LABEL_APPLICATION),
        ("namespace", LABEL_NAMESPACE),
    ):
        for source in sources:
            value = source.get(key)
            if isinstance(value, str) and value:
                setattr(result, attr, value)
                break


def _string_values(params: Mapping[str, ParameterValue]) -> dict[str, str]:
    return {key: value for key, value in params.items() if isinstance(value, str)}


# ----------------------------------------------------------------------
# Statement decoding
# ----------------------------------------------------------------------


def load_statements(data: bytes) -> list[Any]:
    """Split a decoded payload into JSON statements.

    Accepts a single JSON document, a JSON array of statements, or one
    statement per line.

    Raises:
        AttestationFormatError: If no JSON statement can be read.
    """
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise AttestationFormatError(f"attestation payload is not UTF-8: {exc}") from exc

    try:
        document = json.loads(text)
    except json.JSONDecodeError as exc:
        statements = []
        for line in text.splitlines():
            if not line.strip():
                continue
            try:
                statements.append(json.loads(line))
            except json.JSONDecodeError:
                logger.debug("Skipping non-JSON line: %r", line[:200])
        if not statements:
            raise AttestationFormatError(f"attestation payload is not JSON: {exc}") from exc
        return statements

    if isinstance(document, list):
        return document
    return [document]


def _mapping(value: Any, where: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise AttestationFormatError(f"{where} must be an object")
    return value


def _builder_id(container: dict[str, Any], where: str) -> str:
    builder_id = _mapping(container.get("builder"), where).get("id", "")
    return builder_id if isinstance(builder_id, str) else ""


def _descriptors(value: Any, where: str) -> tuple[ResourceDescriptor, ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        raise AttestationFormatError(f"{where} must be an array")
    descriptors = []
    for item in value:
        entry = _mapping(item, f"{where}[]")
        uri = entry.get("uri", "")
        digest = _mapping(entry.get("digest"), f"{where}[].digest")
        descriptors.append(
            ResourceDescriptor(
                uri=uri if isinstance(uri, str) else "",
                digest={k: v for k, v in digest.items() if isinstance(v, str)},
            )
        )
    return tuple(descriptors)
