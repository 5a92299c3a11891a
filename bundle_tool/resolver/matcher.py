"""Match image references against mirror rules and rewrite them.

A rule whose source is a bare registry matches only that exact registry
(``registry.redhat.io`` never matches ``registry.redhat.io.evil.com``). A rule
whose source carries a repository path matches only on a ``/`` boundary
(``quay.io/operator`` matches ``quay.io/operator/x`` but not
``quay.io/operator-sdk/x``). When several rules match, the longest source
wins; among equally long sources the first one in rule order is kept.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

from bundle_tool.registry.parser import ParsedImageReference
from bundle_tool.resolver.policy import MirrorRule

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RuleMatch:
    """A rule that matched, and the repository path left after its source.

    Attributes:
        rule: The matching rule.
        repository: Repository path to append below the mirror. For a
            registry-only rule this is the full repository; for a repository
            rule it is what follows the source prefix (possibly empty).
    """

    rule: MirrorRule
    repository: str

    @property
    def mirror(self) -> str:
        """Return the mirror used for rewriting (the first one listed)."""
        return self.rule.mirrors[0]


def is_path_prefix(candidate: str, prefix: str) -> bool:
    """Return True if ``prefix`` is a ``/``-bounded prefix of ``candidate``."""
    if not candidate.startswith(prefix):
        return False
    return len(candidate) == len(prefix) or candidate[len(prefix)] == "/"


def match_rule(parsed: ParsedImageReference, rule: MirrorRule) -> RuleMatch | None:
    """Match a single rule against a parsed reference."""
    if rule.is_registry_only:
        if parsed.registry == rule.source:
            return RuleMatch(rule=rule, repository=parsed.repository)
        return None

    for prefix in rule.prefixes:
        if is_path_prefix(parsed.name, prefix):
            remainder = parsed.name[len(prefix):].lstrip("/")
            return RuleMatch(rule=rule, repository=remainder)
    return None


def find_best_match(
    parsed: ParsedImageReference,
    rules: Iterable[MirrorRule],
) -> RuleMatch | None:
    """Return the most specific matching rule, or None."""
    best: RuleMatch | None = None
    for rule in rules:
        candidate = match_rule(parsed, rule)
        if candidate is None:
            continue
        if best is None or len(rule.source) > len(best.rule.source):
            best = candidate
    return best


def rewrite(
    parsed: ParsedImageReference,
    mirror: str,
    repository: str | None = None,
) -> str:
    """Rebuild a reference under ``mirror``.

    The digest is emitted when present, otherwise the tag. A reference pinned
    by digest never carries its tag into the result.

    Args:
        parsed: The reference being rewritten.
        mirror: Replacement registry, optionally with a repository prefix.
        repository: Repository path to place below ``mirror``. Defaults to the
            reference's full repository.
    """
    if repository is None:
        repository = parsed.repository

    result = f"{mirror}/{repository}" if repository else mirror
    if parsed.digest:
        return f"{result}@{parsed.digest}"
    if parsed.tag:
        return f"{result}:{parsed.tag}"
    return result


def resolve_parsed(
    parsed: ParsedImageReference,
    rules: Iterable[MirrorRule],
) -> str | None:
    """Primary strategy: rewrite a parsed reference, or None on no match."""
    match = find_best_match(parsed, rules)
    if match is None:
        return None
    logger.debug("Matched %s against source %s", parsed.original, match.rule.source)
    return rewrite(parsed, match.mirror, match.repository)


def resolve_unparsed(image: str, rules: Iterable[MirrorRule]) -> str | None:
    """Secondary strategy for references the parser rejected.

    Splits the raw string on its first ``/`` and keeps whatever follows the
    repository path (``:tag``, ``@digest`` or both) verbatim. The registry and
    path boundary rules still apply.
    """
    registry, sep, rest = image.partition("/")
    if not sep:
        return None

    path, at, digest = rest.partition("@")
    suffix = at + digest
    if ":" in path.rsplit("/", 1)[-1]:
        path, _, tag = path.rpartition(":")
        suffix = f":{tag}{suffix}"
    full_path = f"{registry}/{path}"

    best_rule: MirrorRule | None = None
    best_result: str | None = None
    for rule in rules:
        if rule.is_registry_only:
            if registry != rule.source:
                continue
            result = f"{rule.mirrors[0]}/{rest}"
        else:
            prefix = next((p for p in rule.prefixes if is_path_prefix(full_path, p)), None)
            if prefix is None:
                continue
            remainder = full_path[len(prefix):].lstrip("/")
            base = f"{rule.mirrors[0]}/{remainder}" if remainder else rule.mirrors[0]
            result = base + suffix
        if best_rule is None or len(rule.source) > len(best_rule.source):
            best_rule, best_result = rule, result

    if best_rule is not None:
        logger.debug("Fallback matched %s against source %s", image, best_rule.source)
    return best_result
