"""Extract image references from an unpacked OLM bundle."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path

from bundle_tool.bundle.csv import (
    CSV_KIND,
    BundleError,
    ClusterServiceVersion,
    load_manifest_documents,
)

logger = logging.getLogger(__name__)

_MANIFEST_DIR = "manifests"
_MANIFEST_SUFFIXES = (".yaml", ".yml")
_DIGEST_SUFFIX_RE = re.compile(r"@(sha256:[a-f0-9]{64})$")


@dataclass(frozen=True)
class ImageReference:
    """An image referenced by a bundle.

    Attributes:
        image: Full image reference as it appears in the manifest.
        name: Name of the location that referenced it (container, env var, ...).
        digest: ``sha256:...`` digest if the reference is pinned, else ``""``.
    """

    image: str
    name: str = ""
    digest: str = ""


def extract_digest(image: str) -> str:
    """Return the ``sha256:`` digest suffix of ``image``, or ``""``."""
    match = _DIGEST_SUFFIX_RE.search(image)
    return match.group(1) if match else ""


class BundleAnalyzer:
    """Collect the images declared by the ClusterServiceVersion of a bundle."""

    def extract_image_references(self, bundle_dir: str | Path) -> list[ImageReference]:
        """Return every image referenced by the bundle's CSV documents.

        The bundle's ``manifests/`` directory is scanned for YAML files. Images
        are returned once each, in the order they are first seen.

        Args:
            bundle_dir: Root of the unpacked bundle.

        Returns:
            The de-duplicated image references.

        Raises:
            BundleError: If the bundle has no ``manifests/`` directory.
        """
        manifests = Path(bundle_dir) / _MANIFEST_DIR
        if not manifests.is_dir():
            raise BundleError(f"manifests directory not found in bundle: {bundle_dir}")

        refs: list[ImageReference] = []
        seen: set[str] = set()
        for path in sorted(manifests.iterdir()):
            if not path.is_file() or path.suffix.lower() not in _MANIFEST_SUFFIXES:
                continue
            try:
                documents = load_manifest_documents(path)
            except BundleError as exc:
                logger.warning("Skipping unreadable manifest %s: %s", path.name, exc)
                continue

            for document in documents:
                if document.get("kind") != CSV_KIND:
                    continue
                csv = ClusterServiceVersion(path, document)
                for pullspec in csv.pullspecs():
                    if pullspec.image in seen:
                        continue
                    seen.add(pullspec.image)
                    refs.append(
                        ImageReference(
                            image=pullspec.image,
                            name=pullspec.name,
                            digest=extract_digest(pullspec.image),
                        )
                    )

        logger.debug("Found %d image references in %s", len(refs), manifests)
        return refs
