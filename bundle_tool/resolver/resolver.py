"""Resolve image references through loaded mirror policies."""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from bundle_tool.bundle.analyzer import ImageReference
from bundle_tool.registry.parser import (
    InvalidReferenceError,
    ParsedImageReference,
    parse_image_reference,
)
from bundle_tool.resolver.matcher import (
    find_best_match,
    resolve_parsed,
    resolve_unparsed,
    rewrite,
)
from bundle_tool.resolver.policy import MirrorPolicy, MirrorRule, PolicyKind, load_policy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MirrorStats:
    """Totals over all loaded policies."""

    total_policies: int
    total_mirrors: int


class ImageResolver:
    """Rewrite image references according to ICSP / IDMS mirror policies.

    Policies are loaded once, then :meth:`resolve` may be called any number of
    times, from any number of threads. Rules from every loaded policy are
    ranked together by specificity regardless of the file they came from.
    """

    def __init__(self) -> None:
        self._policies: tuple[MirrorPolicy, ...] = ()
        self._rules: tuple[MirrorRule, ...] = ()
        self._flagged: set[MirrorRule] = set()

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load_policy(self, path: str | Path) -> MirrorPolicy:
        """Load an ICSP or IDMS file, detecting the kind from its ``kind`` field."""
        return self._add(load_policy(path))

    def load_icsp(self, path: str | Path) -> MirrorPolicy:
        """Load a file that must be an ImageContentSourcePolicy."""
        return self._add(load_policy(path, PolicyKind.ICSP))

    def load_idms(self, path: str | Path) -> MirrorPolicy:
        """Load a file that must be an ImageDigestMirrorSet."""
        return self._add(load_policy(path, PolicyKind.IDMS))

    def _add(self, policy: MirrorPolicy) -> MirrorPolicy:
        logger.debug(
            "Loaded %s %r from %s (%d rules)",
            policy.kind.value,
            policy.name,
            policy.path,
            len(policy.rules),
        )
        self._policies = self._policies + (policy,)
        self._rules = self._rules + policy.rules
        self._check_mirror_loops()
        return policy

    def _check_mirror_loops(self) -> None:
        """Warn about rules whose mirror is rewritten again by a loaded source.

        Resolving such a mirror a second time changes it again, so resolution
        stops being idempotent.
        """
        for rule in self._rules:
            if rule in self._flagged:
                continue
            mirror = rule.mirrors[0]
            registry, _, repository = mirror.partition("/")
            parsed = ParsedImageReference(
                registry=registry,
                repository=f"{repository}/image" if repository else "image",
                original=mirror,
            )
            match = find_best_match(parsed, self._rules)
            if match is None or rewrite(parsed, match.mirror, match.repository) == parsed.name:
                continue
            self._flagged.add(rule)
            logger.warning(
                "Mirror %s of source %s is itself matched by source %s; "
                "resolving an already mirrored reference will rewrite it again",
                mirror,
                rule.source,
                match.rule.source,
            )

    @property
    def policies(self) -> tuple[MirrorPolicy, ...]:
        return self._policies

    @property
    def rules(self) -> tuple[MirrorRule, ...]:
        return self._rules

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve_image(self, image: str) -> str:
        """Return the mirrored form of ``image``, or ``image`` unchanged."""
        rules = self._rules
        try:
            parsed = parse_image_reference(image)
        except InvalidReferenceError as exc:
            logger.debug("Using fallback matching for %r: %s", image, exc)
            resolved = resolve_unparsed(image, rules)
        else:
            resolved = resolve_parsed(parsed, rules)
        return image if resolved is None else resolved

    def resolve(self, refs: Iterable[ImageReference]) -> list[ImageReference]:
        """Resolve every reference, preserving order and length.

        Only the ``image`` field of each reference may change.
        """
        resolved: list[ImageReference] = []
        for ref in refs:
            image = self.resolve_image(ref.image)
            if image != ref.image:
                logger.debug("Resolved %s -> %s", ref.image, image)
                ref = dataclasses.replace(ref, image=image)
            resolved.append(ref)
        return resolved

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def mapping_summary(self) -> dict[str, int]:
        """Return policy and mirror counts per policy kind."""
        icsp = [p for p in self._policies if p.kind is PolicyKind.ICSP]
        idms = [p for p in self._policies if p.kind is PolicyKind.IDMS]
        return {
            "icsp_policies_count": len(icsp),
            "idms_policies_count": len(idms),
            "total_icsp_mirrors": sum(p.mirror_count for p in icsp),
            "total_idms_mirrors": sum(p.mirror_count for p in idms),
        }

    def mirror_stats(self) -> MirrorStats:
        return MirrorStats(
            total_policies=len(self._policies),
            total_mirrors=sum(p.mirror_count for p in self._policies),
        )
