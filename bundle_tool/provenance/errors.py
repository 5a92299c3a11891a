"""Exceptions raised while parsing provenance attestations."""

from __future__ import annotations


class ProvenanceError(Exception):
    """Base class for provenance parsing failures."""


class PayloadTooLargeError(ProvenanceError):
    """Raised when a payload exceeds the configured size limit."""

    def __init__(self, size: int, limit: int, stage: str = "payload") -> None:
        self.size = size
        self.limit = limit
        super().__init__(f"{stage} size {size} bytes exceeds maximum allowed {limit} bytes")


class PayloadDecodeError(ProvenanceError):
    """Raised when a payload is empty or yields no usable bytes."""


class AttestationFormatError(ProvenanceError):
    """Raised when a decoded payload is not a valid in-toto statement."""


class NotSLSAProvenanceError(ProvenanceError):
    """Raised when an attestation's predicate type is not SLSA provenance."""

    def __init__(self, predicate_type: str) -> None:
        self.predicate_type = predicate_type
        super().__init__(f"not a SLSA provenance attestation: {predicate_type}")


class ProvenanceTimeoutError(ProvenanceError):
    """Raised when an image's processing deadline passes."""


class ProvenanceCancelledError(ProvenanceError):
    """Raised when the caller cancels a batch."""


class TooManyReferencesError(ProvenanceError):
    """Raised when a batch holds more image references than allowed."""

    def __init__(self, count: int, limit: int) -> None:
        self.count = count
        self.limit = limit
        super().__init__(f"too many image references: {count} (maximum {limit})")
