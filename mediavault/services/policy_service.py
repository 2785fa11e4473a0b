"""
Policy enforcement for staged files.

`enforce` is a pure decision over a category, a byte size and whatever
structural metadata the probes produced. `evaluate` wraps it with content
sniffing and probing for a file on disk, and `validate_batch` applies the
all-or-nothing rule across an upload batch.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from mediavault.domain.errors import BatchRejected, ProbeError
from mediavault.domain.rules import Category, ClassificationRule
from mediavault.security.signatures import OCTET_STREAM, classify_file
from mediavault.services.probes import StructuralMetadata, StructuralProbe

logger = logging.getLogger(__name__)

UNSUPPORTED_CATEGORY = "unsupported_category"
TOO_LARGE = "too_large"
STRUCTURAL_LIMIT_EXCEEDED = "structural_limit_exceeded"
UNREADABLE_CONTENT = "unreadable_content"
EMPTY_FILE = "empty_file"
TOO_MANY_FILES = "too_many_files"
CATEGORY_MISMATCH = "category_mismatch"


@dataclass(slots=True)
class PolicyDecision:
    """Accept or reject outcome for one file."""

    index: int
    category: Category
    mime: str
    accepted: bool
    code: str | None = None
    reason: str | None = None
    kind: str | None = None
    observed: float | None = None
    limit: float | None = None
    skipped_checks: list[str] = field(default_factory=list)
    metadata: StructuralMetadata = field(default_factory=StructuralMetadata)

    def as_error(self) -> dict[str, Any]:
        error: dict[str, Any] = {
            "index": self.index,
            "code": self.code,
            "reason": self.reason,
            "category": self.category.value,
        }
        for key in ("kind", "observed", "limit"):
            value = getattr(self, key)
            if value is not None:
                error[key] = value
        return error


@dataclass(frozen=True, slots=True)
class Candidate:
    """A staged file awaiting validation."""

    index: int
    path: str | os.PathLike[str]
    size: int
    declared_mime: str | None = None


def _reject(
    index: int,
    category: Category,
    mime: str,
    code: str,
    reason: str,
    **details: Any,
) -> PolicyDecision:
    return PolicyDecision(
        index=index, category=category, mime=mime, accepted=False, code=code, reason=reason, **details
    )


class PolicyEnforcer:
    """Apply the per-category rule table."""

    def __init__(
        self,
        rules: Mapping[Category, ClassificationRule],
        probes: Iterable[StructuralProbe] = (),
        max_concurrent_probes: int = 8,
    ):
        self.rules = dict(rules)
        self.max_concurrent_probes = max(1, max_concurrent_probes)
        self._probes: dict[Category, StructuralProbe] = {}
        for probe in probes:
            for category in probe.categories:
                self._probes.setdefault(category, probe)

    def rule_for(self, category: Category) -> ClassificationRule | None:
        return self.rules.get(category)

    def supports_structural_check(self, category: Category) -> bool:
        probe = self._probes.get(category)
        return probe is not None and probe.available()

    def enforce(
        self,
        category: Category,
        size_bytes: int,
        structural: StructuralMetadata | None = None,
        *,
        index: int = 0,
        mime: str = OCTET_STREAM,
        skipped: Iterable[str] = (),
    ) -> PolicyDecision:
        """Check size, then structural limits, against the rule for `category`."""
        rule = self.rules.get(category)
        if rule is None:
            if category is Category.UNKNOWN:
                reason = "File content does not match any supported media type"
            else:
                reason = f"Media type '{category.value}' is not enabled"
            return _reject(index, category, mime, UNSUPPORTED_CATEGORY, reason)

        if size_bytes > rule.max_bytes:
            return _reject(
                index,
                category,
                mime,
                TOO_LARGE,
                f"File is {size_bytes} bytes; {category.value} limit is {rule.max_bytes}",
                kind="size",
                observed=size_bytes,
                limit=rule.max_bytes,
            )

        skipped_checks = list(skipped)
        metadata = structural or StructuralMetadata()
        for kind, limit in rule.structural_limits().items():
            if kind in skipped_checks:
                continue
            observed = metadata.observed(kind)
            if observed is None:
                # The probe reported nothing for this limit.
                skipped_checks.append(kind)
                continue
            if observed > limit:
                return _reject(
                    index,
                    category,
                    mime,
                    STRUCTURAL_LIMIT_EXCEEDED,
                    f"{category.value} {kind} {observed:g} exceeds limit {limit:g}",
                    kind=kind,
                    observed=observed,
                    limit=limit,
                    skipped_checks=skipped_checks,
                    metadata=metadata,
                )

        return PolicyDecision(
            index=index,
            category=category,
            mime=mime,
            accepted=True,
            skipped_checks=skipped_checks,
            metadata=metadata,
        )

    async def evaluate(self, candidate: Candidate) -> PolicyDecision:
        """Classify a file on disk, probe it when possible and enforce policy."""
        index = candidate.index
        if candidate.size == 0:
            return _reject(index, Category.UNKNOWN, OCTET_STREAM, EMPTY_FILE, "File is empty")

        detection = await classify_file(
            candidate.path, candidate.declared_mime, file_size=candidate.size
        )
        # Size and rule checks run before any decoding work.
        precheck = self.enforce(detection.category, candidate.size, index=index, mime=detection.mime)
        if not precheck.accepted:
            return precheck

        rule = self.rules[detection.category]
        limits = rule.structural_limits()
        if not limits:
            return precheck
        if not self.supports_structural_check(detection.category):
            return self.enforce(
                detection.category,
                candidate.size,
                index=index,
                mime=detection.mime,
                skipped=limits.keys(),
            )

        try:
            metadata = await self._probes[detection.category].probe(candidate.path)
        except ProbeError as exc:
            logger.warning("Structural probe failed for entry %s: %s", index, exc)
            return _reject(
                index,
                detection.category,
                detection.mime,
                UNREADABLE_CONTENT,
                f"Could not read {detection.category.value} structure",
            )
        return self.enforce(
            detection.category, candidate.size, metadata, index=index, mime=detection.mime
        )

    async def validate_batch(
        self,
        candidates: Iterable[Candidate],
        requested: Category | None = None,
    ) -> list[PolicyDecision]:
        """
        Evaluate every candidate; raise `BatchRejected` listing all failures.

        `requested` pins the batch to one category; accepted files of any
        other category are rejected with `category_mismatch`.
        """
        # Bounds the probe subprocesses one batch can start at once.
        limiter = asyncio.Semaphore(self.max_concurrent_probes)

        async def evaluate_limited(candidate: Candidate) -> PolicyDecision:
            async with limiter:
                return await self.evaluate(candidate)

        decisions = list(await asyncio.gather(*(evaluate_limited(c) for c in candidates)))
        if requested is not None:
            for pos, decision in enumerate(decisions):
                if decision.accepted and decision.category is not requested:
                    decisions[pos] = _reject(
                        decision.index,
                        decision.category,
                        decision.mime,
                        CATEGORY_MISMATCH,
                        f"Expected {requested.value} but content is {decision.category.value}",
                    )

        rejected = [d for d in decisions if not d.accepted]
        if rejected:
            logger.warning(
                "Upload batch rejected: %d of %d file(s) failed validation",
                len(rejected),
                len(decisions),
                extra={"rejected_indices": [d.index for d in rejected]},
            )
            raise BatchRejected([d.as_error() for d in rejected])
        return decisions
