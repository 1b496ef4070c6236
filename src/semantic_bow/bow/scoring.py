"""Similarity metrics between sparse BoW vectors.

Each ScoringType maps to a Scorer record. For every metric except KL the
score is a function of the words both vectors share: a per-word ``term``
is summed and ``finalize`` maps the sum to the score. The database uses
the same records to accumulate scores straight from its inverted lists,
so both paths give the same numbers.

Scores are pure functions of the (word -> weight) sets: shared words are
found with a sorted intersection, so dict iteration order never matters.

    L1_NORM        1 - 0.5 * sum |v - w|            [0, 1], 1 = identical
    L2_NORM        1 - sqrt(1 - v.w)                [0, 1], 1 = identical
    CHI_SQUARE     2 * sum v w / (v + w)            [0, 1], 1 = identical
    BHATTACHARYYA  sum sqrt(v w)                    [0, 1], 1 = identical
    DOT_PRODUCT    sum v w                          unbounded, unnormalized
    KL             symmetric KL divergence          >= 0, larger = farther
"""

from __future__ import annotations

import math
from collections.abc import Callable
from dataclasses import dataclass

import numpy as np

from ..config import ScoringType
from .vectors import BowVector, LNorm

# Stand-in for log(0) when a word is missing from one side of KL
LOG_EPS = math.log(np.finfo(np.float64).eps)


@dataclass(frozen=True)
class Scorer:
    """Arithmetic of one scoring metric.

    Attributes:
        normalization: Norm applied to vectors before scoring, or None
        term: Contribution of a shared word, vectorized over weights
        finalize: Map from the summed terms to the score
        higher_is_better: False for distances
        empty_score: Score of two empty vectors
    """

    normalization: LNorm | None
    term: Callable[[np.ndarray, np.ndarray], np.ndarray] | None
    finalize: Callable[[np.ndarray], np.ndarray] | None
    higher_is_better: bool = True
    empty_score: float = 1.0

    @property
    def is_decomposable(self) -> bool:
        """Whether the score only depends on shared words."""
        return self.term is not None


def _l1_finalize(acc: np.ndarray) -> np.ndarray:
    return np.clip(-0.5 * acc, 0.0, 1.0)


def _l2_finalize(acc: np.ndarray) -> np.ndarray:
    return np.clip(1.0 - np.sqrt(1.0 - np.minimum(acc, 1.0)), 0.0, 1.0)


def _chi_square_finalize(acc: np.ndarray) -> np.ndarray:
    return np.clip(2.0 * acc, 0.0, 1.0)


def _identity(acc: np.ndarray) -> np.ndarray:
    return acc


_SCORERS: dict[ScoringType, Scorer] = {
    ScoringType.L1_NORM: Scorer(
        normalization=LNorm.L1,
        term=lambda a, b: np.abs(a - b) - a - b,
        finalize=_l1_finalize,
    ),
    ScoringType.L2_NORM: Scorer(
        normalization=LNorm.L2,
        term=lambda a, b: a * b,
        finalize=_l2_finalize,
    ),
    ScoringType.CHI_SQUARE: Scorer(
        normalization=LNorm.L1,
        term=lambda a, b: a * b / (a + b),
        finalize=_chi_square_finalize,
    ),
    ScoringType.BHATTACHARYYA: Scorer(
        normalization=LNorm.L1,
        term=lambda a, b: np.sqrt(a * b),
        finalize=_identity,
    ),
    ScoringType.DOT_PRODUCT: Scorer(
        normalization=None,
        term=lambda a, b: a * b,
        finalize=_identity,
        empty_score=0.0,
    ),
    ScoringType.KL: Scorer(
        normalization=LNorm.L1,
        term=None,
        finalize=None,
        higher_is_better=False,
        empty_score=0.0,
    ),
}


def get_scorer(scoring: ScoringType) -> Scorer:
    """Return the Scorer record of a metric."""
    return _SCORERS[ScoringType(scoring)]


def normalized(bow: BowVector, scoring: ScoringType) -> BowVector:
    """Copy of ``bow`` normalized the way ``scoring`` expects."""
    result = bow.copy()
    norm = get_scorer(scoring).normalization
    if norm is not None:
        result.normalize(norm)
    return result


def score(v1: BowVector, v2: BowVector, scoring: ScoringType) -> float:
    """Compare two BoW vectors.

    Inputs are normalized for the metric first, so vectors produced by a
    vocabulary with a different scoring type still give bounded scores.

    Args:
        v1: First BoW vector
        v2: Second BoW vector
        scoring: Metric to use

    Returns:
        Similarity (higher = more similar), or for KL a divergence
        (larger = farther)
    """
    scorer = get_scorer(scoring)
    if not v1 and not v2:
        return scorer.empty_score

    keys1, w1 = normalized(v1, scoring).to_arrays()
    keys2, w2 = normalized(v2, scoring).to_arrays()

    if not scorer.is_decomposable:
        return _symmetric_kl(keys1, w1, keys2, w2)

    _, i1, i2 = np.intersect1d(keys1, keys2, assume_unique=True, return_indices=True)
    acc = np.sum(scorer.term(w1[i1], w2[i2]))
    return float(scorer.finalize(np.asarray(acc)))


def _symmetric_kl(
    keys1: np.ndarray, w1: np.ndarray, keys2: np.ndarray, w2: np.ndarray
) -> float:
    """0.5 * (KL(v1 || v2) + KL(v2 || v1)) with missing words at log(eps)."""
    _, i1, i2 = np.intersect1d(keys1, keys2, assume_unique=True, return_indices=True)
    a, b = w1[i1], w2[i2]
    shared = np.sum(a * np.log(a / b)) + np.sum(b * np.log(b / a))

    only1 = np.ones(len(w1), dtype=bool)
    only1[i1] = False
    only2 = np.ones(len(w2), dtype=bool)
    only2[i2] = False
    missing = np.sum(w1[only1] * (np.log(w1[only1]) - LOG_EPS)) + np.sum(
        w2[only2] * (np.log(w2[only2]) - LOG_EPS)
    )
    return float(0.5 * (shared + missing))
