"""Unit tests for edit distance and spelling suggestions."""

import pytest

from search_bridge.fuzzy import levenshtein_distance, suggest_spelling


@pytest.mark.unit
class TestLevenshteinDistance:
    """Tests for levenshtein_distance function."""

    def test_identical_strings(self):
        assert levenshtein_distance("hello", "hello") == 0

    def test_empty_strings(self):
        assert levenshtein_distance("", "") == 0
        assert levenshtein_distance("abc", "") == 3
        assert levenshtein_distance("", "abc") == 3

    def test_single_edits(self):
        assert levenshtein_distance("cat", "cats") == 1
        assert levenshtein_distance("cats", "cat") == 1
        assert levenshtein_distance("cat", "bat") == 1

    def test_multiple_edits(self):
        assert levenshtein_distance("kitten", "sitting") == 3

    def test_case_sensitive(self):
        assert levenshtein_distance("Hello", "hello") == 1

    def test_max_distance_cuts_off(self):
        assert levenshtein_distance("a", "abcd", max_distance=1) == 2
        assert levenshtein_distance("abc", "xyzw", max_distance=1) == 2
        assert levenshtein_distance("cat", "bat", max_distance=1) == 1


@pytest.mark.unit
class TestSuggestSpelling:
    """Tests for suggest_spelling function."""

    def test_closest_word_wins(self):
        dictionary = {"apple": 1, "ample": 50}

        assert suggest_spelling("appel", dictionary) == "apple"

    def test_frequency_breaks_ties(self):
        assert suggest_spelling("appla", {"apple": 5, "apply": 2}) == "apple"
        assert suggest_spelling("appla", {"apple": 2, "apply": 5}) == "apply"

    def test_alphabetical_last_resort(self):
        assert suggest_spelling("hat", {"cat": 1, "bat": 1}) == "bat"

    def test_known_word_has_no_suggestion(self):
        assert suggest_spelling("apple", {"apple": 1, "apply": 9}) == ""

    def test_nothing_close_enough(self):
        assert suggest_spelling("zebra", {"apple": 1}) == ""
        assert suggest_spelling("appel", {"apple": 1}, max_edit_distance=0) == ""

    def test_zero_frequency_ignored(self):
        assert suggest_spelling("appel", {"apple": 0}) == ""
