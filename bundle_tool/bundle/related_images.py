"""Regenerate ``spec.relatedImages`` of a bundle CSV, applying mirror policies."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from bundle_tool.bundle.analyzer import ImageReference, extract_digest
from bundle_tool.bundle.csv import BundleError, ClusterServiceVersion
from bundle_tool.resolver.resolver import ImageResolver

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ImageChange:
    """An image rewritten by the mirror policy."""

    original: str
    updated: str


@dataclass
class RelatedImagesResult:
    """Outcome of :func:`generate_related_images`.

    Attributes:
        csv_file: The CSV manifest that was processed.
        changes: Images rewritten by the mirror policy, in CSV order.
        images_count: Number of distinct images found in the CSV.
        dry_run: True if nothing was written.
        summary: One-line human-readable summary.
    """

    csv_file: str
    changes: list[ImageChange] = field(default_factory=list)
    images_count: int = 0
    dry_run: bool = False
    summary: str = ""


def find_csv(target: str | Path) -> ClusterServiceVersion:
    """Load the CSV from a bundle directory or from a CSV file path.

    A directory must contain a ``manifests/`` sub-directory holding exactly
    one CSV. A file path is loaded directly.

    Raises:
        BundleError: If ``target`` does not exist or holds no single CSV.
    """
    target = Path(target)
    if not target.exists():
        raise BundleError(f"target not found: {target}")
    if target.is_dir():
        manifests = target / "manifests"
        if not manifests.is_dir():
            raise BundleError(f"manifests directory not found in {target}")
        return ClusterServiceVersion.from_directory(manifests)
    return ClusterServiceVersion.from_file(target)


def generate_related_images(
    target: str | Path,
    resolver: ImageResolver | None = None,
    dry_run: bool = False,
) -> RelatedImagesResult:
    """Rewrite the CSV's pull specs through ``resolver`` and rebuild ``relatedImages``.

    Args:
        target: Bundle directory or CSV file.
        resolver: Resolver with mirror policies loaded, or None to keep the
            original images.
        dry_run: If True, compute the result without writing the CSV.

    Returns:
        A :class:`RelatedImagesResult`.

    Raises:
        BundleError: If the CSV cannot be loaded or written.
    """
    csv = find_csv(target)
    logger.debug("Processing CSV %s", csv.path)

    refs: list[ImageReference] = []
    seen: set[str] = set()
    for pullspec in csv.pullspecs():
        if pullspec.image not in seen:
            seen.add(pullspec.image)
            refs.append(
                ImageReference(
                    image=pullspec.image,
                    name=pullspec.name,
                    digest=extract_digest(pullspec.image),
                )
            )

    if not refs:
        return RelatedImagesResult(
            csv_file=str(csv.path),
            dry_run=dry_run,
            summary="No images found in CSV",
        )

    changes: list[ImageChange] = []
    if resolver is not None:
        resolved = resolver.resolve(refs)
        changes = [
            ImageChange(original=before.image, updated=after.image)
            for before, after in zip(refs, resolved)
            if before.image != after.image
        ]
        logger.debug("Image mapping summary: %s", resolver.mapping_summary())

    if changes:
        csv.replace_pullspecs({change.original: change.updated for change in changes})
    csv.set_related_images()

    if not dry_run:
        try:
            csv.dump()
        except OSError as exc:
            raise BundleError(f"failed to write updated CSV {csv.path}: {exc}") from exc

    return RelatedImagesResult(
        csv_file=str(csv.path),
        changes=changes,
        images_count=len(refs),
        dry_run=dry_run,
        summary=_summary(len(refs), len(changes), dry_run),
    )


def _summary(images_count: int, changes_count: int, dry_run: bool) -> str:
    status = "would be updated" if dry_run else "updated"
    if changes_count:
        return (
            f"CSV {status} with {images_count} images, "
            f"{changes_count} mirror policy changes applied"
        )
    return f"CSV {status} with {images_count} images, no mirror policy changes"
