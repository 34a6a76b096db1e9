"""Edit distance and spelling suggestions."""

from __future__ import annotations

from collections.abc import Mapping


def levenshtein_distance(s1: str, s2: str, max_distance: int | None = None) -> int:
    """Return the Levenshtein (edit) distance between two strings.

    When ``max_distance`` is given, returns ``max_distance + 1`` as soon as
    the distance is known to exceed it.

        >>> levenshtein_distance("kitten", "sitting")
        3
    """
    if not s1:
        return len(s2)
    if not s2:
        return len(s1)

    if len(s1) > len(s2):
        s1, s2 = s2, s1
    m, n = len(s1), len(s2)

    if max_distance is not None and n - m > max_distance:
        return max_distance + 1

    prev_row = list(range(m + 1))
    curr_row = [0] * (m + 1)
    for j in range(1, n + 1):
        curr_row[0] = j
        row_min = j
        for i in range(1, m + 1):
            cost = 0 if s1[i - 1] == s2[j - 1] else 1
            curr_row[i] = min(prev_row[i] + 1, curr_row[i - 1] + 1, prev_row[i - 1] + cost)
            row_min = min(row_min, curr_row[i])
        if max_distance is not None and row_min > max_distance:
            return max_distance + 1
        prev_row, curr_row = curr_row, prev_row

    return prev_row[m]


def suggest_spelling(word: str, dictionary: Mapping[str, int], max_edit_distance: int = 2) -> str:
    """Best dictionary replacement for ``word``, or ``""`` if there is none.

    Candidates within ``max_edit_distance`` are ranked by distance, then by
    descending frequency, then alphabetically. A word that is itself in the
    dictionary gets no suggestion.
    """
    if not word or word in dictionary or max_edit_distance <= 0:
        return ""
    best: tuple[int, int, str] | None = None
    for candidate, freq in dictionary.items():
        if freq <= 0 or abs(len(candidate) - len(word)) > max_edit_distance:
            continue
        distance = levenshtein_distance(word, candidate, max_edit_distance)
        if distance > max_edit_distance:
            continue
        key = (distance, -freq, candidate)
        if best is None or key < best:
            best = key
    return best[2] if best is not None else ""
