"""Unit tests for the lexical text helpers."""

import pytest

from mnemos.knowledge.text import (
    bm25_score,
    extract_terms,
    keyword_overlap,
    ngram_overlap,
    shorten,
    tokenize,
    truncate_at_sentence,
    truncate_content,
)


class TestTerms:

    def test_extract_terms_drops_stop_words_and_short_tokens(self):
        assert extract_terms("What is the user's role at Acme?") == ["user", "role", "acme"]

    def test_tokenize_keeps_two_letter_words(self):
        assert tokenize("User is VP of Finance!") == ["user", "is", "vp", "of", "finance"]

    def test_ngram_overlap(self):
        assert ngram_overlap("vp of finance", "the vp of finance role") == pytest.approx(1.0)
        assert ngram_overlap("finance", "finance") == 0.0

    def test_keyword_overlap(self):
        assert keyword_overlap("finance role", "User is VP of Finance") == pytest.approx(0.5)

    def test_keyword_overlap_stop_word_query_is_neutral(self):
        assert keyword_overlap("what is it", "anything") == 0.5


class TestBM25:

    def test_empty_query_scores_zero(self):
        assert bm25_score([], ["finance"]) == 0.0

    def test_more_matches_score_higher(self):
        query = ["finance", "role"]

        both = bm25_score(query, ["vp", "finance", "senior", "finance", "role"])
        one = bm25_score(query, ["finance"])
        none = bm25_score(query, ["hiking"])

        assert both > one > none == 0.0

    def test_score_is_capped(self):
        assert bm25_score(["a"], ["a"] * 50, avg_doc_length=1.0) <= 1.0


class TestTruncation:

    def test_short_content_unchanged(self):
        assert truncate_content("short", 500) == "short"

    def test_cuts_at_late_space(self):
        text = "word " * 30

        result = truncate_content(text, 50)

        assert len(result) <= 50
        assert not result.endswith(" ")

    def test_cuts_mid_word_without_late_space(self):
        assert truncate_content("x" * 60, 50) == "x" * 50

    def test_truncate_at_sentence(self):
        document = "First sentence. " * 20

        result = truncate_at_sentence(document, 100)

        assert result.endswith("[truncated]")
        assert len(result) < 120

    def test_shorten(self):
        assert shorten("abcdefghij", 6) == "abc..."
        assert shorten("abc", 6) == "abc"
