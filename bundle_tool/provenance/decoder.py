"""Decode raw attestation payloads into bounded bytes."""

from __future__ import annotations

import base64
import binascii
import logging

from bundle_tool.provenance.errors import PayloadDecodeError, PayloadTooLargeError

logger = logging.getLogger(__name__)

_PREVIEW_LENGTH = 100


def decode_payload(raw: bytes | str, max_size: int) -> bytes:
    """Turn a raw attestation payload into JSON bytes.

    Payloads that already look like JSON (they start with ``{`` or ``[``
    once whitespace is stripped) are used as is. Anything else is base64
    decoded; if that fails the raw bytes are used instead, since some
    producers emit plain text.

    The size limit is checked on the raw payload before any work and again
    on the decoded result.

    Args:
        raw: The payload as fetched.
        max_size: Maximum size in bytes.

    Returns:
        The decoded payload. Callers must still treat it as untrusted.

    Raises:
        PayloadTooLargeError: If the payload exceeds ``max_size``.
        PayloadDecodeError: If the payload is empty.
    """
    data = raw.encode("utf-8") if isinstance(raw, str) else bytes(raw)
    if len(data) > max_size:
        raise PayloadTooLargeError(len(data), max_size)

    trimmed = data.strip()
    if not trimmed:
        raise PayloadDecodeError("empty attestation payload")

    if trimmed[:1] in (b"{", b"["):
        logger.debug("Payload is raw JSON: %r", trimmed[:_PREVIEW_LENGTH])
        decoded = trimmed
    else:
        try:
            decoded = base64.b64decode(trimmed, validate=True)
        except (binascii.Error, ValueError):
            logger.debug("Payload is not base64, using raw bytes: %r", trimmed[:_PREVIEW_LENGTH])
            decoded = data

    if len(decoded) > max_size:
        raise PayloadTooLargeError(len(decoded), max_size, stage="decoded payload")
    if not decoded.strip():
        raise PayloadDecodeError("attestation payload decoded to nothing")
    return decoded
