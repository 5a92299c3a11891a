"""End-to-end snapshot creation for an unpacked bundle."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from bundle_tool.bundle.analyzer import BundleAnalyzer, ImageReference
from bundle_tool.config import MirrorPolicyConfig, MirrorPolicyLoader
from bundle_tool.provenance.parser import ProvenanceInfo, ProvenanceParser
from bundle_tool.resolver.resolver import ImageResolver
from bundle_tool.snapshot.generator import SnapshotGenerator, to_yaml, validate_snapshot

logger = logging.getLogger(__name__)


@dataclass
class SnapshotRequest:
    """Inputs of :func:`create_snapshot`."""

    bundle_image: str
    bundle_dir: str
    output_file: str | None = None
    namespace: str | None = None
    app_name: str | None = None
    bundle_repo: str | None = None
    bundle_commit: str | None = None
    mirror_policy: MirrorPolicyConfig = field(default_factory=MirrorPolicyConfig)


@dataclass
class SnapshotResult:
    """What :func:`create_snapshot` wrote."""

    snapshot_file: str
    application: str
    namespace: str | None
    components_count: int
    original_refs: list[ImageReference]
    resolved_refs: list[ImageReference]
    provenance: list[ProvenanceInfo]

    @property
    def summary(self) -> str:
        return (
            f"Application: {self.application}, Namespace: {self.namespace or ''}, "
            f"Components: {self.components_count}"
        )


def create_snapshot(
    request: SnapshotRequest,
    *,
    parser: ProvenanceParser | None = None,
    resolver: ImageResolver | None = None,
    analyzer: BundleAnalyzer | None = None,
) -> SnapshotResult:
    """Analyze a bundle, resolve its images, read their provenance and write a Snapshot.

    Raises:
        BundleError: If the bundle cannot be analyzed.
        MirrorPolicyError: If the configured mirror policy cannot be loaded.
        SnapshotError: If no application name is known or the result is invalid.
        TooManyReferencesError: If the bundle references too many images.
    """
    analyzer = analyzer or BundleAnalyzer()
    resolver = resolver or ImageResolver()
    parser = parser or ProvenanceParser()

    refs = analyzer.extract_image_references(request.bundle_dir)
    logger.info("Found %d image references in bundle %s", len(refs), request.bundle_image)

    MirrorPolicyLoader(request.mirror_policy).load_into(resolver)
    resolved = resolver.resolve(refs)

    provenance = parser.parse_all(resolved)
    logger.info("Provenance parsing summary: %s", parser.parsing_summary(provenance))

    generator = SnapshotGenerator.from_provenance(
        request.bundle_image,
        parser,
        namespace=request.namespace,
        fallback_app_name=request.app_name,
    )
    snapshot = generator.generate(
        resolved,
        provenance,
        request.bundle_image,
        parser=parser,
        bundle_source_repo=request.bundle_repo,
        bundle_source_commit=request.bundle_commit,
    )
    validate_snapshot(snapshot)

    output = Path(request.output_file or f"{snapshot['spec']['application']}-snapshot.yaml")
    output.write_text(to_yaml(snapshot), encoding="utf-8")
    logger.info("Snapshot written to %s", output)

    return SnapshotResult(
        snapshot_file=str(output),
        application=snapshot["spec"]["application"],
        namespace=snapshot["metadata"].get("namespace"),
        components_count=len(snapshot["spec"]["components"]),
        original_refs=refs,
        resolved_refs=resolved,
        provenance=provenance,
    )
