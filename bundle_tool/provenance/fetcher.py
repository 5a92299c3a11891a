"""Fetch cosign attestations for an image from its registry.

Signature verification is not performed here; payloads are returned as they
are stored.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Protocol

import requests

from bundle_tool.registry.client import RegistryClient, RegistryError
from bundle_tool.registry.parser import parse_image_reference

logger = logging.getLogger(__name__)

_ATTESTATION_TAG_SUFFIX = ".att"


@dataclass(frozen=True)
class AttestationPayload:
    """One attestation as stored by the registry.

    Attributes:
        payload: The DSSE envelope payload, usually base64-encoded JSON.
        payload_type: The DSSE payload type, if known.
    """

    payload: str
    payload_type: str = ""


class AttestationFetcher(Protocol):
    """Something that returns the attestations stored for an image."""

    def fetch(self, image_ref: str, *, timeout: float) -> list[AttestationPayload]:
        ...


def attestation_tag(digest: str) -> str:
    """Return the cosign attestation tag for a manifest digest."""
    algorithm, _, encoded = digest.partition(":")
    return f"{algorithm}-{encoded}{_ATTESTATION_TAG_SUFFIX}"


class RegistryAttestationFetcher:
    """Read cosign ``.att`` manifests over the Docker Registry V2 API.

    Args:
        session: Optional :class:`requests.Session` shared by all fetches.
    """

    def __init__(self, session: requests.Session | None = None) -> None:
        self._session = session

    def fetch(self, image_ref: str, *, timeout: float) -> list[AttestationPayload]:
        """Return the attestations attached to ``image_ref``.

        An image without an attestation manifest yields an empty list.
        ``timeout`` bounds each HTTP request and the fetch as a whole: no
        further layer is downloaded once it has elapsed.

        Raises:
            InvalidReferenceError: If ``image_ref`` cannot be parsed.
            RegistryError: If a registry call fails.
        """
        deadline = time.monotonic() + timeout
        parsed = parse_image_reference(image_ref)
        client = RegistryClient(
            parsed.registry,
            parsed.repository,
            timeout=timeout,
            session=self._session,
        )

        digest = parsed.digest or client.resolve_digest(parsed.tag or "latest")
        tag = attestation_tag(digest)
        try:
            manifest = client.get_manifest(tag)
        except RegistryError as exc:
            if exc.status_code == 404:
                logger.debug("No attestation manifest %s for %s", tag, image_ref)
                return []
            raise

        payloads: list[AttestationPayload] = []
        for layer in manifest.get("layers") or []:
            layer_digest = layer.get("digest")
            if not layer_digest:
                continue
            if time.monotonic() >= deadline:
                raise RegistryError(
                    f"fetching attestations for {image_ref} exceeded {timeout:g}s"
                )
            envelope = client.get_blob(layer_digest)
            payload = envelope.get("payload")
            if not isinstance(payload, str):
                logger.debug("Layer %s is not a DSSE envelope", layer_digest)
                continue
            payloads.append(
                AttestationPayload(payload=payload, payload_type=envelope.get("payloadType", ""))
            )

        logger.debug("Fetched %d attestations for %s", len(payloads), image_ref)
        return payloads

