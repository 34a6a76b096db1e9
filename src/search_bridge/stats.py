"""Statistical helpers for BM25 scoring and relevance feedback.

The functions here stay independent of the storage layer so that the matcher
and the expansion code can share them and they can be unit tested alone.
"""

from __future__ import annotations

from dataclasses import dataclass
import math


@dataclass(frozen=True)
class CollectionStats:
    """Collection-wide figures needed to weight a term."""

    doc_count: int
    total_length: int

    @property
    def average_length(self) -> float:
        if self.doc_count == 0:
            return 0.0
        return self.total_length / self.doc_count


def calculate_idf(doc_freq: int, total_docs: int, *, floor: float = 1e-6) -> float:
    """Return inverse document frequency with small-sample smoothing.

    The IDF is floored so that scores never go negative; in a small
    collection a term present in most documents gets a near-zero IDF
    instead of a negative one.
    """

    if total_docs <= 0:
        return 0.0
    df = max(0, min(doc_freq, total_docs))
    numerator = total_docs - df + 0.5
    denominator = df + 0.5
    ratio = max(numerator / denominator, floor)
    raw_idf = math.log(ratio + floor) + 1.0
    return max(raw_idf, floor)


def relevance_idf(
    doc_freq: int,
    total_docs: int,
    rel_freq: int,
    rset_size: int,
    *,
    floor: float = 1e-6,
) -> float:
    """Robertson/Sparck Jones weight using relevance judgements.

    With an empty relevance set this reduces to :func:`calculate_idf`.
    """

    if rset_size <= 0:
        return calculate_idf(doc_freq, total_docs, floor=floor)
    if total_docs <= 0:
        return 0.0
    n = max(0, min(doc_freq, total_docs))
    r = max(0, min(rel_freq, rset_size, n))
    numerator = (r + 0.5) * (total_docs - n - rset_size + r + 0.5)
    denominator = (n - r + 0.5) * (rset_size - r + 0.5)
    ratio = max(numerator / denominator, floor)
    return max(math.log(ratio + floor) + 1.0, floor)


def bm25(tf: int, doc_length: int, avg_doc_length: float, *, k1: float = 1.2, b: float = 0.75) -> float:
    """Compute the BM25 term weight without IDF.

    The length ratio is capped at 4x the average so very long documents
    are not pushed to the bottom purely by size.
    """

    if tf <= 0:
        return 0.0
    max_length_ratio = 4.0
    raw_ratio = doc_length / max(avg_doc_length, 1e-9)
    normalized_length = min(raw_ratio, max_length_ratio)
    denominator = tf + k1 * (1 - b + b * normalized_length)
    return (tf * (k1 + 1)) / denominator


def max_bm25(idf: float, *, k1: float = 1.2) -> float:
    """Upper bound of ``idf * bm25(...)`` over all documents."""
    return idf * (k1 + 1)


def expand_weight(rel_freq: int, rset_size: int, doc_freq: int, total_docs: int) -> float:
    """Weight of a candidate expansion term.

    Proportion of relevant documents containing the term multiplied by its
    relevance weight, so terms that are common among the relevant documents
    and rare elsewhere come first.
    """

    if rset_size <= 0 or rel_freq <= 0:
        return 0.0
    return (rel_freq / rset_size) * relevance_idf(doc_freq, total_docs, rel_freq, rset_size)


@dataclass(frozen=True)
class BM25Weight:
    """BM25 weighting scheme parameters."""

    k1: float = 1.2
    b: float = 0.75

    def __post_init__(self) -> None:
        if self.k1 < 0 or not 0.0 <= self.b <= 1.0:
            raise ValueError(f"Invalid BM25 parameters k1={self.k1} b={self.b}")

    @property
    def is_boolean(self) -> bool:
        return False


@dataclass(frozen=True)
class BoolWeight:
    """Every match gets weight 0; ranking falls back to document id order."""

    @property
    def is_boolean(self) -> bool:
        return True
