"""Parse container image references into registry components."""

from __future__ import annotations

import re
from dataclasses import dataclass

#: Registry assumed when a reference has no domain component.
DEFAULT_REGISTRY = "docker.io"

#: Namespace prepended to single-segment Docker Hub repositories.
OFFICIAL_NAMESPACE = "library"

# Legacy Docker Hub hostname, normalized to ``docker.io``.
_LEGACY_DEFAULT_REGISTRY = "index.docker.io"

# Maximum length of ``registry/repository``.
_NAME_TOTAL_LENGTH_MAX = 255

# Digest algorithms we know how to validate, with their hex length.
_DIGEST_HEX_LENGTHS: dict[str, int] = {
    "sha256": 64,
    "sha384": 96,
    "sha512": 128,
}

_DOMAIN_COMPONENT = r"(?:[a-zA-Z0-9]|[a-zA-Z0-9][a-zA-Z0-9-]*[a-zA-Z0-9])"
_DOMAIN = rf"{_DOMAIN_COMPONENT}(?:\.{_DOMAIN_COMPONENT})*(?::[0-9]+)?"
_PATH_COMPONENT = r"[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*"
_TAG = r"[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}"
_DIGEST = r"[A-Za-z][A-Za-z0-9]*(?:[-_+.][A-Za-z][A-Za-z0-9]*)*:[0-9a-fA-F]{32,}"

_REFERENCE_RE = re.compile(
    rf"^(?P<name>[^:@]+(?::[0-9]+(?=/))?(?:/[^:@]+)*)"
    rf"(?::(?P<tag>{_TAG}))?"
    rf"(?:@(?P<digest>{_DIGEST}))?$"
)
_DOMAIN_RE = re.compile(rf"^{_DOMAIN}$")
_PATH_RE = re.compile(rf"^{_PATH_COMPONENT}(?:/{_PATH_COMPONENT})*$")
_ANONYMOUS_ID_RE = re.compile(r"^[a-f0-9]{64}$")


class InvalidReferenceError(ValueError):
    """Raised when an image reference does not follow the reference grammar."""


@dataclass(frozen=True)
class ParsedImageReference:
    """Normalized components of an image reference.

    Attributes:
        registry: Registry host, including any port (e.g. ``quay.io``).
        repository: Repository path below the registry (e.g. ``library/nginx``).
        tag: Tag, if the reference carried one.
        digest: Content digest (``algorithm:hex``), if the reference carried one.
        original: The reference exactly as it was given.
    """

    registry: str
    repository: str
    tag: str | None = None
    digest: str | None = None
    original: str = ""

    @property
    def name(self) -> str:
        """Return ``registry/repository`` without tag or digest."""
        return f"{self.registry}/{self.repository}"

    @property
    def image_name(self) -> str:
        """Return the short image name (last segment of the repository path)."""
        return self.repository.rsplit("/", 1)[-1]


def parse_image_reference(ref: str) -> ParsedImageReference:
    """Parse an image reference into a :class:`ParsedImageReference`.

    Supported formats:

    * ``nginx`` / ``nginx:latest``  (Docker Hub official image)
    * ``myuser/myapp:v1``  (Docker Hub user image)
    * ``registry.example.com:5000/org/app:v1``
    * ``quay.io/org/app@sha256:<hex>``
    * ``quay.io/org/app:v1@sha256:<hex>``  (both kept; digest wins on rewrite)

    Args:
        ref: The image reference string.

    Returns:
        A :class:`ParsedImageReference` with the parsed components.

    Raises:
        InvalidReferenceError: If the reference cannot be parsed.
    """
    if not ref:
        raise InvalidReferenceError("empty image reference")

    if _ANONYMOUS_ID_RE.match(ref):
        raise InvalidReferenceError(
            f"unsupported image reference format (bare image ID): {ref}"
        )

    match = _REFERENCE_RE.match(ref)
    if not match:
        raise InvalidReferenceError(f"invalid image reference format: {ref}")

    name = match.group("name")
    if len(name) > _NAME_TOTAL_LENGTH_MAX:
        raise InvalidReferenceError(
            f"repository name must not be more than {_NAME_TOTAL_LENGTH_MAX} characters: {ref}"
        )

    registry, repository = _split_domain(name)
    if not _DOMAIN_RE.match(registry):
        raise InvalidReferenceError(f"invalid registry domain {registry!r} in {ref}")
    if repository.lower() != repository:
        raise InvalidReferenceError(f"repository name must be lowercase: {ref}")
    if not _PATH_RE.match(repository):
        raise InvalidReferenceError(f"invalid repository path {repository!r} in {ref}")

    digest = match.group("digest")
    if digest is not None:
        _validate_digest(digest, ref)

    if registry == _LEGACY_DEFAULT_REGISTRY:
        registry = DEFAULT_REGISTRY
    if registry == DEFAULT_REGISTRY and "/" not in repository:
        repository = f"{OFFICIAL_NAMESPACE}/{repository}"

    return ParsedImageReference(
        registry=registry,
        repository=repository,
        tag=match.group("tag"),
        digest=digest,
        original=ref,
    )


def _split_domain(name: str) -> tuple[str, str]:
    """Split ``name`` into ``(registry, repository)``.

    The first path segment is a registry only if it looks like a hostname:
    it contains a dot or a port, or is ``localhost``. Anything else is a
    Docker Hub repository.
    """
    first, sep, rest = name.partition("/")
    if not sep:
        return DEFAULT_REGISTRY, name
    if "." in first or ":" in first or first == "localhost":
        return first, rest
    return DEFAULT_REGISTRY, name


def _validate_digest(digest: str, ref: str) -> None:
    """Check that ``digest`` uses a known algorithm with a well-formed hex part."""
    algorithm, _, encoded = digest.partition(":")
    expected = _DIGEST_HEX_LENGTHS.get(algorithm)
    if expected is None:
        raise InvalidReferenceError(
            f"unsupported digest algorithm {algorithm!r} in {ref}"
        )
    if len(encoded) != expected or encoded.lower() != encoded:
        raise InvalidReferenceError(f"invalid {algorithm} digest in {ref}")
