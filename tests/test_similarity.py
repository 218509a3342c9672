"""Tests for fixfinder.similarity."""

import pytest

from fixfinder.similarity import levenshtein, similarity


class TestLevenshtein:
    @pytest.mark.parametrize("a,b,expected", [
        ("", "", 0),
        ("", "abc", 3),
        ("abc", "", 3),
        ("kitten", "sitting", 3),
        ("flaw", "lawn", 2),
        ("same", "same", 0),
    ])
    def test_known_distances(self, a: str, b: str, expected: int) -> None:
        assert levenshtein(a, b) == expected

    def test_symmetric(self) -> None:
        assert levenshtein("fix nil deref", "fix nil pointer deref") == levenshtein("fix nil pointer deref", "fix nil deref")


class TestSimilarity:
    def test_identity(self) -> None:
        assert similarity("fix parser", "fix parser") == 1.0

    def test_both_empty(self) -> None:
        assert similarity("", "") == 1.0

    def test_one_empty(self) -> None:
        assert similarity("", "abc") == 0.0

    def test_normalized_by_longest(self) -> None:
        assert similarity("kitten", "sitting") == pytest.approx(1 - 3 / 7)

    def test_range_and_symmetry(self) -> None:
        pairs = [("a", "b"), ("abc", "abd"), ("pillar", "caterpillar"), ("x", "xxxxxxxx")]
        for a, b in pairs:
            s = similarity(a, b)
            assert 0.0 <= s <= 1.0
            assert s == similarity(b, a)
