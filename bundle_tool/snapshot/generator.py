"""Build Konflux ``Snapshot`` resources from bundle images and their provenance."""

from __future__ import annotations

import hashlib
import json
import logging
import re
from datetime import datetime, timezone
from importlib import resources
from typing import Any, Iterable

import jsonschema
import yaml

from bundle_tool.bundle.analyzer import ImageReference
from bundle_tool.provenance.errors import ProvenanceError
from bundle_tool.provenance.parser import ProvenanceInfo, ProvenanceParser
from bundle_tool.snapshot.git import clean_git_url

logger = logging.getLogger(__name__)

API_VERSION = "appstudio.redhat.com/v1alpha1"
KIND = "Snapshot"

APPLICATION_LABEL = "appstudio.openshift.io/application"
SOURCE_LABEL = "bundle-tool.konflux.io/source"
SOURCE_BUNDLE_ANNOTATION = "bundle-tool.konflux.io/source-bundle"
GENERATED_AT_ANNOTATION = "bundle-tool.konflux.io/generated-at"

MAX_NAME_LENGTH = 63
_SUFFIX_BYTES = 3

_INVALID_NAME_CHARS_RE = re.compile(r"[^a-z0-9-]")
_HYPHENS_RE = re.compile(r"-+")


class SnapshotError(Exception):
    """Raised when a snapshot cannot be built or fails validation."""


# ----------------------------------------------------------------------
# Naming
# ----------------------------------------------------------------------


def normalize_name(name: str, max_length: int = MAX_NAME_LENGTH) -> str:
    """Turn ``name`` into a Kubernetes DNS-1123 label.

    Lowercases, maps ``_``, ``.`` and ``@`` to ``-``, drops other invalid
    characters, collapses hyphens and truncates to ``max_length``.
    """
    name = name.lower()
    for char in "_.@":
        name = name.replace(char, "-")
    name = _INVALID_NAME_CHARS_RE.sub("", name)
    name = _HYPHENS_RE.sub("-", name).strip("-")
    if not name:
        return "component"
    if len(name) > max_length:
        name = _end_alphanumeric(name[:max_length])
    return name


def _end_alphanumeric(name: str) -> str:
    if name and not name[-1].isalnum():
        return name[:-1] + "1"
    return name


def _image_basename(image: str) -> str:
    last = image.rsplit("/", 1)[-1]
    return last.split("@", 1)[0].split(":", 1)[0]


def _name_with_suffix(base: str, image: str) -> str:
    """Append a short hash of ``image`` to ``base``, staying within the length limit."""
    suffix = hashlib.sha256(image.encode("utf-8")).hexdigest()[: _SUFFIX_BYTES * 2]
    max_base = MAX_NAME_LENGTH - len(suffix) - 1
    if len(base) > max_base:
        base = _end_alphanumeric(base[:max_base])
    return f"{base}-{suffix}"


# ----------------------------------------------------------------------
# Generator
# ----------------------------------------------------------------------


class SnapshotGenerator:
    """Assemble a Snapshot for one application.

    Component names are stable for the lifetime of the generator: the same
    image always gets the same name, and a name already taken by another
    image gets a hash suffix derived from the image.

    Args:
        app_name: Konflux application name.
        namespace: Namespace for the Snapshot; omitted from the output when
            empty.
    """

    def __init__(self, app_name: str, namespace: str | None = None) -> None:
        self.app_name = app_name
        self.namespace = namespace or None
        self._names: dict[str, str] = {}
        self._used: set[str] = set()

    @classmethod
    def from_provenance(
        cls,
        bundle_image: str,
        parser: ProvenanceParser | None,
        *,
        namespace: str | None = None,
        fallback_app_name: str | None = None,
        fallback_namespace: str | None = None,
    ) -> SnapshotGenerator:
        """Create a generator whose application and namespace come from the bundle's provenance.

        Args:
            bundle_image: The bundle image reference.
            parser: Parser used to read the bundle's provenance, or None.
            namespace: Explicit namespace; overrides provenance and fallback.
            fallback_app_name: Used when provenance has no application name.
            fallback_namespace: Used when provenance has no namespace.

        Raises:
            SnapshotError: If no application name is available.
        """
        app_name = ""
        provenance_namespace = ""
        if parser is not None:
            try:
                app_name = parser.extract_application_name(bundle_image)
            except ProvenanceError as exc:
                logger.debug("No application name in provenance of %s: %s", bundle_image, exc)
            try:
                provenance_namespace = parser.extract_namespace(bundle_image)
            except ProvenanceError as exc:
                logger.debug("No namespace in provenance of %s: %s", bundle_image, exc)

        if not app_name:
            if not fallback_app_name:
                raise SnapshotError(
                    "application name not found in provenance and no fallback provided"
                )
            logger.info("Using fallback application name %s", fallback_app_name)
            app_name = fallback_app_name

        resolved_namespace = namespace or provenance_namespace or fallback_namespace
        return cls(app_name, resolved_namespace)

    def component_name(self, ref: ImageReference) -> str:
        """Return the component name for ``ref``, allocating one if needed."""
        existing = self._names.get(ref.image)
        if existing is not None:
            return existing
        return self._claim(ref.image, normalize_name(ref.name or _image_basename(ref.image)))

    def _claim(self, image: str, base: str) -> str:
        name = base if base not in self._used else _name_with_suffix(base, image)
        self._names[image] = name
        self._used.add(name)
        return name

    def generate(
        self,
        refs: Iterable[ImageReference],
        provenance: Iterable[ProvenanceInfo],
        bundle_image: str,
        *,
        parser: ProvenanceParser | None = None,
        bundle_source_repo: str | None = None,
        bundle_source_commit: str | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """Build the Snapshot document.

        The bundle is always the first component. Other images are included
        only when their provenance is verified and names a source
        repository. Components are unique by container image.

        Args:
            refs: Images referenced by the bundle (already mirror-resolved).
            provenance: Provenance results for ``refs``, matched by image.
            bundle_image: The bundle image reference.
            parser: Used to read the bundle's own component name and source.
            bundle_source_repo: Bundle source when provenance has none.
            bundle_source_commit: Revision paired with ``bundle_source_repo``.
            now: Generation time; defaults to the current UTC time.

        Returns:
            The Snapshot as a plain dict.
        """
        now = now or datetime.now(timezone.utc)
        by_image = {info.image_ref: info for info in provenance}

        metadata: dict[str, Any] = {
            "name": f"{normalize_name(self.app_name, 200)}-bundle-snapshot-{now:%Y%m%d-%H%M%S}",
            "labels": {APPLICATION_LABEL: self.app_name, SOURCE_LABEL: "bundle-analysis"},
            "annotations": {
                SOURCE_BUNDLE_ANNOTATION: bundle_image,
                GENERATED_AT_ANNOTATION: now.isoformat(timespec="seconds"),
            },
        }
        if self.namespace:
            metadata["namespace"] = self.namespace

        components = [
            self._bundle_component(bundle_image, parser, bundle_source_repo, bundle_source_commit)
        ]
        for ref in refs:
            info = by_image.get(ref.image)
            if info is None or not info.verified or not info.source_repo:
                logger.info(
                    "Skipping image %s: no verified provenance source (%s)",
                    ref.image,
                    "no result" if info is None else info.error or "no source repository",
                )
                continue
            components.append(
                {
                    "name": self.component_name(ref),
                    "containerImage": ref.image,
                    "source": _git_source(clean_git_url(info.source_repo), info.source_commit),
                }
            )

        snapshot = {
            "apiVersion": API_VERSION,
            "kind": KIND,
            "metadata": metadata,
            "spec": {
                "application": self.app_name,
                "displayName": f"{self.app_name} Bundle Snapshot",
                "displayDescription": f"Snapshot generated from OLM bundle {bundle_image}",
                "components": components,
            },
        }
        deduplicate_components(snapshot)
        return snapshot

    def _bundle_component(
        self,
        bundle_image: str,
        parser: ProvenanceParser | None,
        fallback_repo: str | None,
        fallback_commit: str | None,
    ) -> dict[str, Any]:
        name = ""
        source: dict[str, Any] | None = None
        if parser is not None:
            try:
                name = parser.extract_component_name(bundle_image)
            except ProvenanceError as exc:
                logger.debug("No component name in provenance of %s: %s", bundle_image, exc)

            info = parser.parse_image(bundle_image)
            if info.verified and info.source_repo:
                source = _git_source(clean_git_url(info.source_repo), info.source_commit)
            elif info.verified:
                logger.warning("Bundle image %s has no source repository in provenance", bundle_image)
            else:
                logger.warning("Bundle image %s has no valid provenance: %s", bundle_image, info.error)

        if source is None and fallback_repo:
            logger.info("Using fallback source for bundle: %s", fallback_repo)
            source = _git_source(fallback_repo, fallback_commit or "")

        if name:
            name = self._claim(bundle_image, normalize_name(name))
        else:
            name = self.component_name(ImageReference(image=bundle_image))

        component: dict[str, Any] = {"name": name, "containerImage": bundle_image}
        if source is not None:
            component["source"] = source
        return component


def _git_source(url: str, revision: str) -> dict[str, Any]:
    git: dict[str, str] = {"url": url}
    if revision:
        git["revision"] = revision
    return {"git": git}


# ----------------------------------------------------------------------
# Post-processing
# ----------------------------------------------------------------------


def deduplicate_components(snapshot: dict[str, Any]) -> None:
    """Keep only the first component for each container image, in place."""
    seen: set[str] = set()
    unique = []
    for component in snapshot["spec"]["components"]:
        if component["containerImage"] in seen:
            continue
        seen.add(component["containerImage"])
        unique.append(component)
    snapshot["spec"]["components"] = unique


def validate_snapshot(snapshot: dict[str, Any]) -> None:
    """Validate ``snapshot`` against the bundled JSON Schema.

    Raises:
        SnapshotError: If validation fails.
    """
    schema_ref = resources.files("bundle_tool.schemas").joinpath("snapshot.schema.json")
    schema = json.loads(schema_ref.read_text(encoding="utf-8"))
    try:
        jsonschema.validate(instance=snapshot, schema=schema)
    except jsonschema.ValidationError as exc:
        location = "/".join(str(p) for p in exc.absolute_path) or "<root>"
        raise SnapshotError(f"generated snapshot is invalid at {location}: {exc.message}") from exc


def to_yaml(snapshot: dict[str, Any]) -> str:
    return yaml.safe_dump(snapshot, sort_keys=False, default_flow_style=False)
