"""Tests for candidate resolution over both call sites."""

import threading

from structlog.testing import capture_logs

from stockgate.resolver import CandidateResolver, ItemReference, needs_review, resolve_many
from stockgate.types import CatalogEntry, ExtractedLine, MatchCandidate, MatchQuery

CATALOG = [
    CatalogEntry(id="mc", name="12/2 MC Cable", category="Wire", unit="ft"),
    CatalogEntry(id="b20", name="20A Breaker", category="Breakers", unit="ea"),
    CatalogEntry(id="b30", name="30A Breaker", category="Breakers", unit="ea"),
]


class TestResolveMany:
    def test_one_result_per_query_in_order(self):
        queries = [MatchQuery(name="breaker"), MatchQuery(name="12/2 MC Cable")]
        results = resolve_many(queries, CATALOG)
        assert [r.confidence_tier for r in results] == ["MANUAL", "HIGH"]
        assert results[1].catalog_item_id == "mc"

    def test_empty_input(self):
        assert resolve_many([], CATALOG) == []


class TestResolveItemRefs:
    def test_known_id_is_exact(self):
        resolver = CandidateResolver()
        [result] = resolver.resolve_item_refs([ItemReference(item_id="b20")], CATALOG)
        assert result.confidence_tier == "EXACT"
        assert result.catalog_item_id == "b20"
        assert "20A Breaker" in result.reason

    def test_unknown_id_is_manual_and_not_rematched_by_name(self):
        resolver = CandidateResolver()
        ref = ItemReference(item_id="gone", name="12/2 MC Cable")
        [result] = resolver.resolve_item_refs([ref], CATALOG)
        assert result.confidence_tier == "MANUAL"
        assert result.catalog_item_id is None
        assert result.source_text == "12/2 MC Cable"

    def test_name_only_goes_through_matcher(self):
        resolver = CandidateResolver()
        [result] = resolver.resolve_item_refs(
            [ItemReference(name="12/2 MC", category="Wire")], CATALOG
        )
        assert result.confidence_tier == "HIGH"


class TestResolverStats:
    def test_counts_per_tier(self):
        resolver = CandidateResolver()
        lines = [
            ExtractedLine(name="12/2 MC Cable", quantity=10),
            ExtractedLine(name="breaker", quantity=2),
            ExtractedLine(name="MC", quantity=1),
        ]
        resolver.resolve_lines(lines, CATALOG)
        assert resolver.stats.total == 3
        assert resolver.stats.tiers["HIGH"] == 1
        assert resolver.stats.tiers["MANUAL"] == 1
        assert resolver.stats.tiers["LOW"] == 1
        assert resolver.stats.matched == 2

    def test_stats_accumulate_across_calls(self):
        resolver = CandidateResolver()
        resolver.resolve_item_refs([ItemReference(item_id="mc")], CATALOG)
        resolver.resolve_item_refs([ItemReference(item_id="b30")], CATALOG)
        assert resolver.stats.tiers["EXACT"] == 2

    def test_log_reports_only_the_current_call(self):
        resolver = CandidateResolver()
        resolver.resolve_lines([ExtractedLine(name="12/2 MC Cable", quantity=1)] * 4, CATALOG)
        with capture_logs() as logs:
            resolver.resolve_lines([ExtractedLine(name="breaker", quantity=1)], CATALOG)
        [done] = [e for e in logs if e["event"] == "resolve_lines_done"]
        assert (done["matched"], done["total"]) == (0, 1)
        assert resolver.stats.total == 5

    def test_shared_resolver_counts_every_thread(self):
        resolver = CandidateResolver()
        lines = [ExtractedLine(name="20A Breaker", quantity=1)] * 50

        def work():
            for _ in range(20):
                resolver.resolve_lines(lines, CATALOG)

        threads = [threading.Thread(target=work) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert resolver.stats.total == 4 * 20 * 50
        assert resolver.stats.tiers["HIGH"] == 4 * 20 * 50


def test_needs_review():
    def candidate(tier):
        return MatchCandidate(source_text="x", catalog_item_id=None, confidence_tier=tier, reason="")

    assert needs_review(candidate("LOW"))
    assert needs_review(candidate("MANUAL"))
    assert not needs_review(candidate("MEDIUM"))
    assert not needs_review(candidate("EXACT"))
