"""Parse the build provenance of bundle images.

For each image the attestations are fetched, decoded and tried in order; the
first one that is SLSA provenance and extracts cleanly supplies the image's
:class:`ProvenanceInfo`. Fields are never merged across attestations.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import asdict, dataclass, field
from typing import Any, Iterable

from bundle_tool.bundle.analyzer import ImageReference
from bundle_tool.config import ProvenanceLimits
from bundle_tool.provenance.decoder import decode_payload
from bundle_tool.provenance.errors import (
    AttestationFormatError,
    NotSLSAProvenanceError,
    ProvenanceCancelledError,
    ProvenanceError,
    ProvenanceTimeoutError,
    TooManyReferencesError,
)
from bundle_tool.provenance.fetcher import (
    AttestationFetcher,
    AttestationPayload,
    RegistryAttestationFetcher,
)
from bundle_tool.provenance.slsa import (
    ExtractedProvenance,
    SLSAAttestation,
    classify,
    extract,
    load_statements,
)
from bundle_tool.registry.parser import InvalidReferenceError, parse_image_reference

logger = logging.getLogger(__name__)

MAX_IMAGE_REFERENCES = 1000
MAX_REFERENCE_LENGTH = 1024
MAX_NAME_LENGTH = 256


@dataclass
class ProvenanceInfo:
    """Provenance of one image.

    ``verified`` is True only when an attestation was fetched and one of
    them was extracted successfully. Otherwise ``error`` says why.
    """

    image_ref: str
    source_repo: str = ""
    source_commit: str = ""
    build_platform: str = ""
    component_name: str = ""
    application_name: str = ""
    namespace: str = ""
    verified: bool = False
    error: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        if data["error"] is None:
            del data["error"]
        return data


def validate_reference(ref: ImageReference) -> None:
    """Check the size and character set of a reference before any work.

    Raises:
        ValueError: If the reference is empty, too long or holds control
            characters.
    """
    if len(ref.image) > MAX_REFERENCE_LENGTH:
        raise ValueError(
            f"image reference too long: {len(ref.image)} characters "
            f"exceeds maximum of {MAX_REFERENCE_LENGTH}"
        )
    if len(ref.name) > MAX_NAME_LENGTH:
        raise ValueError(
            f"image name too long: {len(ref.name)} characters exceeds maximum of {MAX_NAME_LENGTH}"
        )
    if any(ord(char) < 32 or ord(char) == 127 for char in ref.image):
        raise ValueError("invalid character in image reference")
    if not ref.image:
        raise ValueError("empty image reference")


class ProvenanceParser:
    """Extract build provenance from image attestations.

    One parser holds one set of limits; build another parser for different
    limits rather than changing them while parsing.

    Args:
        fetcher: Source of attestation payloads. Defaults to the registry.
        limits: Size, count and time limits.
    """

    def __init__(
        self,
        fetcher: AttestationFetcher | None = None,
        limits: ProvenanceLimits | None = None,
    ) -> None:
        self._fetcher = fetcher if fetcher is not None else RegistryAttestationFetcher()
        self._limits = limits or ProvenanceLimits()

    @property
    def limits(self) -> ProvenanceLimits:
        return self._limits

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    def parse_all(
        self,
        refs: Iterable[ImageReference],
        *,
        cancel: threading.Event | None = None,
        max_workers: int = 1,
    ) -> list[ProvenanceInfo]:
        """Parse provenance for every valid reference.

        Invalid references are logged and skipped. Failures of individual
        images are recorded in their :class:`ProvenanceInfo`.

        Args:
            refs: The image references.
            cancel: Optional event; once set, images not yet started fail
                with a cancellation error.
            max_workers: Images processed concurrently. Result order always
                matches input order.

        Returns:
            One :class:`ProvenanceInfo` per valid reference.

        Raises:
            ProvenanceCancelledError: If ``cancel`` is already set.
            TooManyReferencesError: If more than 1000 references are given.
        """
        refs = list(refs)
        if cancel is not None and cancel.is_set():
            raise ProvenanceCancelledError("provenance parsing cancelled")
        if len(refs) > MAX_IMAGE_REFERENCES:
            raise TooManyReferencesError(len(refs), MAX_IMAGE_REFERENCES)

        valid: list[ImageReference] = []
        for index, ref in enumerate(refs):
            try:
                validate_reference(ref)
            except ValueError as exc:
                logger.warning("Skipping invalid image reference %d: %s", index, exc)
                continue
            valid.append(ref)

        if max_workers <= 1 or len(valid) <= 1:
            return [self.parse_image(ref.image, cancel=cancel) for ref in valid]

        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            return list(pool.map(lambda ref: self.parse_image(ref.image, cancel=cancel), valid))

    # ------------------------------------------------------------------
    # Single image
    # ------------------------------------------------------------------

    def parse_image(
        self,
        image_ref: str,
        *,
        cancel: threading.Event | None = None,
    ) -> ProvenanceInfo:
        """Parse the provenance of one image. Never raises for per-image failures."""
        info = ProvenanceInfo(image_ref=image_ref)
        logger.debug("Parsing provenance for %s", image_ref)
        try:
            extracted = self._process(image_ref, cancel)
        except ProvenanceError as exc:
            info.error = str(exc)
            logger.warning("Provenance parsing failed for %s: %s", image_ref, exc)
            return info

        info.source_repo = extracted.source_repo
        info.source_commit = extracted.source_commit
        info.build_platform = extracted.build_platform
        info.component_name = extracted.component_name
        info.application_name = extracted.application_name
        info.namespace = extracted.namespace
        info.metadata = dict(extracted.metadata)
        info.verified = True
        logger.debug("Provenance verified for %s, source=%s", image_ref, info.source_repo)
        return info

    def _process(
        self,
        image_ref: str,
        cancel: threading.Event | None,
    ) -> ExtractedProvenance:
        deadline = time.monotonic() + self._limits.processing_timeout
        if cancel is not None and cancel.is_set():
            raise ProvenanceCancelledError("provenance parsing cancelled")

        attestations = self._fetch(image_ref, deadline)
        if not attestations:
            raise ProvenanceError("no provenance attestations found")

        for index, attestation in enumerate(self._bounded(attestations, image_ref)):
            if cancel is not None and cancel.is_set():
                raise ProvenanceCancelledError(
                    f"provenance parsing cancelled after processing {index} attestations"
                )
            if time.monotonic() >= deadline:
                raise ProvenanceTimeoutError(
                    f"provenance parsing timed out after processing {index} attestations"
                )
            try:
                return self.parse_attestation(attestation)
            except ProvenanceError as exc:
                logger.warning("Failed to parse attestation %d for %s: %s", index, image_ref, exc)

        raise ProvenanceError("failed to parse any attestations")

    def _bounded(
        self,
        attestations: list[AttestationPayload],
        image_ref: str,
    ) -> list[AttestationPayload]:
        limit = self._limits.max_attestations
        if len(attestations) > limit:
            logger.warning(
                "Limiting attestations from %d to %d for image %s",
                len(attestations),
                limit,
                image_ref,
            )
            return attestations[:limit]
        return attestations

    def _fetch(self, image_ref: str, deadline: float) -> list[AttestationPayload]:
        """Fetch attestations, giving up when ``deadline`` passes.

        The fetch runs in a worker thread that cannot be interrupted. After a
        timeout that thread finishes in the background; the fetcher receives
        the remaining time so it stops between downloads, and each request is
        bounded by the same timeout.
        """
        try:
            parse_image_reference(image_ref)
        except InvalidReferenceError as exc:
            raise ProvenanceError(f"failed to parse image reference: {exc}") from exc

        remaining = deadline - time.monotonic()
        executor = ThreadPoolExecutor(max_workers=1)
        try:
            future = executor.submit(self._fetcher.fetch, image_ref, timeout=remaining)
            return list(future.result(timeout=remaining))
        except FuturesTimeoutError:
            raise ProvenanceTimeoutError(
                f"timed out fetching attestations after {self._limits.processing_timeout:g}s"
            ) from None
        except ProvenanceError:
            raise
        except Exception as exc:
            raise ProvenanceError(f"failed to get attestations: {exc}") from exc
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    # ------------------------------------------------------------------
    # Single attestation
    # ------------------------------------------------------------------

    def parse_attestation(self, attestation: AttestationPayload) -> ExtractedProvenance:
        """Decode one attestation and extract the first SLSA statement in it.

        Raises:
            PayloadTooLargeError: If the payload exceeds the size limit.
            PayloadDecodeError: If the payload is empty.
            AttestationFormatError: If the payload holds no valid statement.
            NotSLSAProvenanceError: If no statement is SLSA provenance.
        """
        decoded = decode_payload(attestation.payload, self._limits.max_payload_size)
        logger.debug("Decoded payload preview: %r", decoded[:200])

        last_error: ProvenanceError | None = None
        for statement in load_statements(decoded):
            try:
                slsa = SLSAAttestation.from_statement(statement)
                return extract(slsa, classify(slsa))
            except (AttestationFormatError, NotSLSAProvenanceError) as exc:
                logger.debug("Skipping statement: %s", exc)
                last_error = exc
        raise last_error or AttestationFormatError("attestation payload holds no statements")

    # ------------------------------------------------------------------
    # Single-field helpers
    # ------------------------------------------------------------------

    def extract_component_name(self, image_ref: str) -> str:
        return self._extract_field(image_ref, "component_name", "component name")

    def extract_application_name(self, image_ref: str) -> str:
        return self._extract_field(image_ref, "application_name", "application name")

    def extract_namespace(self, image_ref: str) -> str:
        return self._extract_field(image_ref, "namespace", "namespace")

    def _extract_field(self, image_ref: str, attr: str, label: str) -> str:
        """Return the first non-empty ``attr`` over the image's attestations.

        Raises:
            ProvenanceError: If the attestations cannot be fetched or none
                carries the field.
        """
        deadline = time.monotonic() + self._limits.processing_timeout
        attestations = self._fetch(image_ref, deadline)
        if not attestations:
            raise ProvenanceError("no attestations found")

        for attestation in self._bounded(attestations, image_ref):
            try:
                extracted = self.parse_attestation(attestation)
            except ProvenanceError:
                continue
            value: str = getattr(extracted, attr)
            if value:
                return value
        raise ProvenanceError(f"{label} not found in provenance")

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    @staticmethod
    def parsing_summary(results: list[ProvenanceInfo]) -> dict[str, Any]:
        """Return counts over ``results`` and the verification rate in percent."""
        total = len(results)
        verified = sum(1 for r in results if r.verified)
        return {
            "total_images": total,
            "verified_images": verified,
            "images_with_source": sum(1 for r in results if r.source_repo),
            "verification_rate": (verified / total * 100) if total else 0.0,
        }
