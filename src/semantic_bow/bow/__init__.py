"""Bag-of-words representations and the metrics that compare them."""

from .scoring import LOG_EPS, Scorer, get_scorer, normalized, score
from .vectors import (
    BowVector,
    FeatureVector,
    LNorm,
    build_bow_vector,
    build_feature_vector,
)

__all__ = [
    # Vectors
    "BowVector",
    "FeatureVector",
    "LNorm",
    "build_bow_vector",
    "build_feature_vector",
    # Scoring
    "Scorer",
    "get_scorer",
    "normalized",
    "score",
    "LOG_EPS",
]
