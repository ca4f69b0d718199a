"""Tests for text folding and search-term expansion."""

from stockgate.normalize import contains_either, fold, keywords, same_text, search_variations


def test_fold_collapses_case_and_whitespace():
    assert fold("  12/2   MC\tCable ") == "12/2 mc cable"


def test_fold_none_is_empty():
    assert fold(None) == ""


def test_fold_nfkc():
    # fullwidth digits fold to ASCII
    assert fold("１２/2 MC") == "12/2 mc"


def test_same_text_ignores_case():
    assert same_text("Wire", " wire ")


def test_same_text_blanks_never_equal():
    assert not same_text("", "")
    assert not same_text(None, "  ")


def test_contains_either_both_directions():
    assert contains_either("12/2 MC Cable", "12/2 mc")
    assert contains_either("mc", "12/2 MC Cable")
    assert not contains_either("breaker", "panel")


def test_contains_either_blank_is_false():
    assert not contains_either("", "anything")


def test_search_variations_gauge():
    variations = search_variations("number 4 wire")
    assert variations[0] == "number 4 wire"
    assert "#4" in variations
    assert "4 awg" in variations
    assert "conductor" in variations


def test_search_variations_fraction_and_product():
    variations = search_variations('3/4 EMT')
    assert '3/4"' in variations
    assert "emt conduit" in variations
    assert "electrical metallic tubing" in variations
    # components searched alone once there are two of them
    assert "3/4" in variations
    assert "emt" in variations


def test_search_variations_no_duplicates():
    variations = search_variations("thhn thwn wire")
    assert len(variations) == len(set(variations))


def test_search_variations_blank():
    assert search_variations("   ") == []


def test_keywords_drops_short_words():
    assert keywords("a 12/2 MC cable") == ["12/2", "cable"]
