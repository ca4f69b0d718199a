"""Deterministic confidence matching of item references against a catalog.

The matcher is an ordered rule cascade. The first rule that produces a single
catalog entry wins; there is no score blending, so every result can be
explained by the rule that fired. That explanation is carried in
``MatchCandidate.reason`` and is what a reviewer or auditor sees.

Rules, in order:

1. exact name (case-insensitive)          -> HIGH
2. one substring candidate                -> HIGH / MEDIUM / LOW by category+unit
3. several substring candidates, category -> MEDIUM when category leaves one
4. no substring candidate, category       -> LOW when the category has one entry
5. otherwise                              -> MANUAL
"""

from __future__ import annotations

from collections.abc import Sequence

from stockgate.errors import AmbiguousCatalogError
from stockgate.normalize import contains_either, fold, same_text
from stockgate.types import CatalogEntry, MatchCandidate, MatchQuery


def match_item(query: MatchQuery, catalog: Sequence[CatalogEntry]) -> MatchCandidate:
    """Resolve one item reference to at most one catalog entry.

    Names are unique per branch, so a snapshot spanning several branches may
    hold the same name once per branch; that is reported as MANUAL so the
    user picks a branch. Raises AmbiguousCatalogError if two entries in the
    same branch share the queried name, which only happens when catalog data
    is corrupt.
    """
    name = fold(query.name)

    if name:
        # Rule 1: exact name
        exact = [e for e in catalog if fold(e.name) == name]
        if len(exact) > 1:
            branches = sorted({e.branch_id or "" for e in exact})
            if len(branches) < len(exact):
                raise AmbiguousCatalogError(query.name, sorted(e.id for e in exact))
            return _manual(
                query,
                f"'{query.name.strip()}' is stocked in {len(exact)} branches "
                f"({', '.join(branches)}) - choose a branch",
            )
        if exact:
            return _candidate(query, exact[0], "HIGH", f"Exact name match on '{exact[0].name}'")

        # Rule 2: substring in either direction
        fuzzy = [e for e in catalog if contains_either(e.name, name)]
        if len(fuzzy) == 1:
            return _single_fuzzy(query, fuzzy[0])

        # Rule 3: several substring hits, narrowed by category
        if len(fuzzy) > 1 and query.category:
            in_category = [e for e in fuzzy if same_text(e.category, query.category)]
            if len(in_category) == 1:
                entry = in_category[0]
                return _candidate(
                    query,
                    entry,
                    "MEDIUM",
                    f"{len(fuzzy)} partial name matches; category '{entry.category}' "
                    f"selects '{entry.name}'",
                )

        if len(fuzzy) > 1:
            return _manual(
                query,
                f"{len(fuzzy)} catalog items partially match '{query.name}' and "
                "category does not single one out - manual selection required",
            )
    else:
        fuzzy = []

    # Rule 4: category only, when nothing matched by name
    if not fuzzy and query.category:
        in_category = [e for e in catalog if same_text(e.category, query.category)]
        if len(in_category) == 1:
            entry = in_category[0]
            return _candidate(
                query,
                entry,
                "LOW",
                f"Only catalog item in category '{entry.category}' is '{entry.name}'; "
                "name differs - review required",
            )

    # Rule 5
    if not catalog:
        return _manual(query, "Catalog is empty - manual selection required")
    return _manual(query, "No automatic match found - manual selection required")


def _single_fuzzy(query: MatchQuery, entry: CatalogEntry) -> MatchCandidate:
    category_ok = bool(query.category) and same_text(entry.category, query.category)
    unit_ok = not query.unit or same_text(entry.unit, query.unit)

    if category_ok and unit_ok:
        detail = "category and unit match" if query.unit else "category matches"
        return _candidate(query, entry, "HIGH", f"Partial name match on '{entry.name}'; {detail}")
    if category_ok:
        return _candidate(
            query,
            entry,
            "MEDIUM",
            f"Partial name match on '{entry.name}'; category matches but unit "
            f"'{query.unit}' differs from '{entry.unit}'",
        )
    return _candidate(
        query,
        entry,
        "LOW",
        f"Partial name match on '{entry.name}' only - review recommended",
    )


def _candidate(query: MatchQuery, entry: CatalogEntry, tier, reason: str) -> MatchCandidate:
    return MatchCandidate(
        source_text=query.name,
        catalog_item_id=entry.id,
        confidence_tier=tier,
        reason=reason,
    )


def _manual(query: MatchQuery, reason: str) -> MatchCandidate:
    return MatchCandidate(
        source_text=query.name,
        catalog_item_id=None,
        confidence_tier="MANUAL",
        reason=reason,
    )
