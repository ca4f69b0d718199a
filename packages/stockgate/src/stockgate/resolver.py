"""Candidate resolution shared by the chat and document-import entry points."""

from __future__ import annotations

from collections.abc import Sequence
import threading
from dataclasses import dataclass, field

import structlog

from stockgate.matcher import match_item
from stockgate.types import CatalogEntry, ExtractedLine, MatchCandidate, MatchQuery

log = structlog.get_logger()

BLOCKING_TIERS: frozenset[str] = frozenset({"LOW", "MANUAL"})


def needs_review(candidate: MatchCandidate) -> bool:
    """True if a human must look at this match before anything executes on it."""
    return candidate.confidence_tier in BLOCKING_TIERS


def resolve_many(
    queries: Sequence[MatchQuery], catalog: Sequence[CatalogEntry]
) -> list[MatchCandidate]:
    """Match every query independently against the same catalog snapshot."""
    return [match_item(q, catalog) for q in queries]


@dataclass(frozen=True)
class ItemReference:
    """An item named in a tool call: by catalog id, by free text, or both."""

    item_id: str | None = None
    name: str | None = None
    category: str | None = None
    unit: str | None = None


@dataclass
class ResolverStats:
    """Counts of resolutions per confidence tier."""

    total: int = 0
    tiers: dict[str, int] = field(default_factory=lambda: {
        "EXACT": 0, "HIGH": 0, "MEDIUM": 0, "LOW": 0, "MANUAL": 0
    })

    @property
    def matched(self) -> int:
        return self.total - self.tiers["MANUAL"]


class CandidateResolver:
    """Applies the confidence matcher for both call sites.

    ``stats`` accumulates over the resolver's lifetime and may be shared by
    request threads; log lines report only the current call.
    """

    def __init__(self) -> None:
        self.stats = ResolverStats()
        self._lock = threading.Lock()

    def resolve_lines(
        self, lines: Sequence[ExtractedLine], catalog: Sequence[CatalogEntry]
    ) -> list[MatchCandidate]:
        """Resolve extracted bill-of-materials lines."""
        log.info("resolve_lines_start", lines=len(lines), catalog=len(catalog))
        queries = [MatchQuery(name=l.name, category=l.category, unit=l.unit) for l in lines]
        results = resolve_many(queries, catalog)
        self._record(results)
        matched = sum(1 for r in results if r.confidence_tier != "MANUAL")
        log.info("resolve_lines_done", matched=matched, total=len(results))
        return results

    def resolve_item_refs(
        self, refs: Sequence[ItemReference], catalog: Sequence[CatalogEntry]
    ) -> list[MatchCandidate]:
        """Resolve item references from a model tool call.

        A reference with a catalog id is checked against the snapshot and
        never re-matched by name; the id is what the model committed to.
        """
        by_id = {e.id: e for e in catalog}
        results: list[MatchCandidate] = []
        for ref in refs:
            if ref.item_id:
                entry = by_id.get(ref.item_id)
                if entry is not None:
                    results.append(MatchCandidate(
                        source_text=ref.name or ref.item_id,
                        catalog_item_id=entry.id,
                        confidence_tier="EXACT",
                        reason=f"Catalog id {entry.id} given explicitly ('{entry.name}')",
                    ))
                else:
                    results.append(MatchCandidate(
                        source_text=ref.name or ref.item_id,
                        catalog_item_id=None,
                        confidence_tier="MANUAL",
                        reason=f"Catalog id {ref.item_id} is not in the catalog",
                    ))
                continue
            query = MatchQuery(name=ref.name or "", category=ref.category, unit=ref.unit)
            results.append(match_item(query, catalog))

        self._record(results)
        log.debug(
            "resolve_item_refs_done",
            refs=len(refs),
            tiers=[r.confidence_tier for r in results],
        )
        return results

    def _record(self, results: Sequence[MatchCandidate]) -> None:
        with self._lock:
            for r in results:
                self.stats.total += 1
                self.stats.tiers[r.confidence_tier] += 1
