"""Read and rewrite ClusterServiceVersion (CSV) manifests.

Image pull specs in a CSV live in several places: ``spec.relatedImages``,
deployment containers and init containers, ``RELATED_IMAGE_*`` environment
variables and the ``containerImage`` annotation. :class:`ClusterServiceVersion`
finds all of them and can rewrite them in place.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator

import yaml

logger = logging.getLogger(__name__)

CSV_KIND = "ClusterServiceVersion"

_RELATED_IMAGE_ENV_PREFIX = "RELATED_IMAGE_"
_CONTAINER_IMAGE_ANNOTATION = "containerImage"
_YAML_SUFFIXES = (".yaml", ".yml")


class BundleError(Exception):
    """Raised when bundle manifests cannot be located or loaded."""


@dataclass
class PullSpec:
    """One image pull spec and the place in the CSV that holds it.

    Attributes:
        name: Name suggested by the location (container name, env var, ...).
        image: The image reference.
        holder: The mapping that holds the reference.
        key: The key under which ``holder`` stores it.
    """

    name: str
    image: str
    holder: dict[str, Any]
    key: str

    def replace(self, image: str) -> None:
        self.holder[self.key] = image
        self.image = image


class ClusterServiceVersion:
    """A CSV manifest loaded from disk.

    Args:
        path: File the manifest was read from.
        data: The parsed manifest.
    """

    def __init__(self, path: Path, data: dict[str, Any]) -> None:
        self.path = path
        self.data = data

    @property
    def name(self) -> str:
        return str((self.data.get("metadata") or {}).get("name", ""))

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    @classmethod
    def from_file(cls, path: str | Path) -> ClusterServiceVersion:
        """Load the CSV document in ``path``.

        Raises:
            BundleError: If the file cannot be read or holds no CSV.
        """
        path = Path(path)
        for document in load_manifest_documents(path):
            if document.get("kind") == CSV_KIND:
                return cls(path, document)
        raise BundleError(f"no {CSV_KIND} found in {path}")

    @classmethod
    def from_directory(cls, directory: str | Path) -> ClusterServiceVersion:
        """Load the single CSV in ``directory``.

        Raises:
            BundleError: If there is no CSV, or more than one.
        """
        directory = Path(directory)
        found: list[ClusterServiceVersion] = []
        for path in sorted(directory.iterdir()):
            if not path.is_file() or path.suffix.lower() not in _YAML_SUFFIXES:
                continue
            try:
                documents = load_manifest_documents(path)
            except BundleError as exc:
                logger.warning("Skipping %s: %s", path, exc)
                continue
            found.extend(cls(path, d) for d in documents if d.get("kind") == CSV_KIND)

        if not found:
            raise BundleError(f"no CSV files found in directory: {directory}")
        if len(found) > 1:
            raise BundleError(f"multiple CSV files found in {directory}, only one expected")
        return found[0]

    # ------------------------------------------------------------------
    # Pull specs
    # ------------------------------------------------------------------

    def pullspecs(self) -> list[PullSpec]:
        """Return every image pull spec in the CSV, in document order."""
        return list(self._iter_pullspecs())

    def _iter_pullspecs(self) -> Iterator[PullSpec]:
        spec = self.data.get("spec") or {}

        for related in spec.get("relatedImages") or []:
            if isinstance(related, dict) and related.get("image"):
                yield PullSpec(related.get("name", ""), related["image"], related, "image")

        install = (spec.get("install") or {}).get("spec") or {}
        for deployment in install.get("deployments") or []:
            deployment_name = deployment.get("name", "")
            pod_spec = (((deployment.get("spec") or {}).get("template") or {}).get("spec")) or {}
            for field, fallback in (
                ("containers", f"{deployment_name}-container"),
                ("initContainers", f"{deployment_name}-init-container"),
            ):
                for container in pod_spec.get(field) or []:
                    if container.get("image"):
                        yield PullSpec(
                            container.get("name") or fallback,
                            container["image"],
                            container,
                            "image",
                        )
                    for env in container.get("env") or []:
                        env_name = env.get("name", "")
                        if env_name.startswith(_RELATED_IMAGE_ENV_PREFIX) and env.get("value"):
                            suffix = env_name[len(_RELATED_IMAGE_ENV_PREFIX):]
                            yield PullSpec(suffix.lower().replace("_", "-"), env["value"], env, "value")

        annotations = (self.data.get("metadata") or {}).get("annotations") or {}
        if annotations.get(_CONTAINER_IMAGE_ANNOTATION):
            yield PullSpec(
                f"{self.name}-annotation" if self.name else "csv-annotation",
                annotations[_CONTAINER_IMAGE_ANNOTATION],
                annotations,
                _CONTAINER_IMAGE_ANNOTATION,
            )

    def replace_pullspecs(self, replacements: dict[str, str]) -> int:
        """Replace images by exact match. Returns the number of locations changed."""
        changed = 0
        for pullspec in self._iter_pullspecs():
            new_image = replacements.get(pullspec.image)
            if new_image is not None and new_image != pullspec.image:
                pullspec.replace(new_image)
                changed += 1
        return changed

    def set_related_images(self) -> list[dict[str, str]]:
        """Rebuild ``spec.relatedImages`` from the CSV's other pull specs.

        Each image appears once. Names are unique; a repeated name gets a
        numeric suffix.
        """
        related: list[dict[str, str]] = []
        seen_images: set[str] = set()
        used_names: set[str] = set()
        for pullspec in self._iter_pullspecs():
            if pullspec.image in seen_images:
                continue
            seen_images.add(pullspec.image)
            name = pullspec.name or pullspec.image.rsplit("/", 1)[-1].split("@")[0].split(":")[0]
            unique = name
            counter = 1
            while unique in used_names:
                counter += 1
                unique = f"{name}-{counter}"
            used_names.add(unique)
            related.append({"name": unique, "image": pullspec.image})

        self.data.setdefault("spec", {})["relatedImages"] = related
        return related

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.data, sort_keys=False, default_flow_style=False)

    def dump(self, path: str | Path | None = None) -> Path:
        """Write the manifest to ``path`` (default: where it was read from)."""
        target = Path(path) if path is not None else self.path
        target.write_text(self.to_yaml(), encoding="utf-8")
        return target


def load_manifest_documents(path: Path) -> list[dict[str, Any]]:
    """Return the mapping documents of a (possibly multi-document) YAML file."""
    try:
        text = path.read_text(encoding="utf-8")
        documents = list(yaml.safe_load_all(text))
    except (OSError, yaml.YAMLError) as exc:
        raise BundleError(f"failed to load manifest {path}: {exc}") from exc
    return [d for d in documents if isinstance(d, dict)]
