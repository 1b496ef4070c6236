"""Sparse bag-of-words and feature vectors.

A BowVector maps word id -> weight and only holds positive weights.
A FeatureVector maps a node id at the direct-index level to the indices
of the descriptors that fell under that node, in descriptor order.
"""

from __future__ import annotations

from enum import Enum

import numpy as np

from ..config import WeightingType


class LNorm(Enum):
    """Vector norm used for normalization."""

    L1 = "L1"
    L2 = "L2"


class BowVector(dict[int, float]):
    """Sparse weighted word histogram of one image."""

    def add_weight(self, word_id: int, weight: float) -> None:
        """Add ``weight`` to the word, creating it if absent."""
        self[word_id] = self.get(word_id, 0.0) + weight

    def add_if_not_exist(self, word_id: int, weight: float) -> None:
        """Set the word's weight only if the word is not present yet."""
        if word_id not in self:
            self[word_id] = weight

    def normalize(self, norm: LNorm) -> None:
        """Scale weights in place so the vector has unit ``norm``.

        Empty or all-zero vectors are left unchanged.
        """
        _, values = self.to_arrays()
        if norm is LNorm.L1:
            total = float(np.abs(values).sum())
        else:
            total = float(np.sqrt(np.dot(values, values)))
        if total > 0:
            for word_id in self:
                self[word_id] /= total

    def to_arrays(self) -> tuple[np.ndarray, np.ndarray]:
        """Return (word ids, weights) sorted by word id."""
        if not self:
            return np.empty(0, dtype=np.int64), np.empty(0, dtype=np.float64)
        word_ids = np.fromiter(sorted(self), dtype=np.int64, count=len(self))
        weights = np.fromiter((self[w] for w in word_ids.tolist()), dtype=np.float64, count=len(self))
        return word_ids, weights

    @property
    def total(self) -> float:
        """Sum of all weights."""
        return float(sum(self.values()))

    def copy(self) -> BowVector:
        return BowVector(self)

    def __repr__(self) -> str:
        items = ", ".join(f"<{w}, {v:g}>" for w, v in sorted(self.items()))
        return f"BowVector({items})"


class FeatureVector(dict[int, list[int]]):
    """Direct index of one image: node id -> descriptor indices."""

    def add_feature(self, node_id: int, feature_index: int) -> None:
        """Append a descriptor index under ``node_id``."""
        self.setdefault(node_id, []).append(feature_index)

    def copy(self) -> FeatureVector:
        return FeatureVector({node: list(indices) for node, indices in self.items()})

    def __repr__(self) -> str:
        items = ", ".join(f"{n}: {idx}" for n, idx in sorted(self.items()))
        return f"FeatureVector({{{items}}})"


def build_bow_vector(
    word_ids: np.ndarray,
    weights: np.ndarray,
    weighting: WeightingType,
    normalization: LNorm | None,
) -> BowVector:
    """Accumulate per-descriptor word assignments into a BoW vector.

    With TF and TF_IDF weighting every descriptor adds its word's weight;
    without a normalizing metric the result is divided by the number of
    descriptors. With IDF and BINARY weighting each word is counted once.

    Args:
        word_ids: Word of each descriptor, shape (N,)
        weights: Word weight of each descriptor, shape (N,)
        weighting: Weighting scheme of the vocabulary
        normalization: Norm required by the scoring metric, or None

    Returns:
        BoW vector holding only positive weights
    """
    bow = BowVector()
    n_features = len(word_ids)

    if weighting in (WeightingType.TF, WeightingType.TF_IDF):
        for word_id, weight in zip(word_ids.tolist(), weights.tolist()):
            if weight > 0:
                bow.add_weight(word_id, weight)

        if bow and normalization is None:
            for word_id in bow:
                bow[word_id] /= n_features
    else:
        for word_id, weight in zip(word_ids.tolist(), weights.tolist()):
            if weight > 0:
                bow.add_if_not_exist(word_id, weight)

    if normalization is not None:
        bow.normalize(normalization)

    return bow


def build_feature_vector(node_ids: np.ndarray, weights: np.ndarray) -> FeatureVector:
    """Group descriptor indices by their direct-index node.

    Descriptors whose word has no weight are left out, matching the BoW
    vector built from the same pass.
    """
    features = FeatureVector()
    for index, (node_id, weight) in enumerate(zip(node_ids.tolist(), weights.tolist())):
        if weight > 0:
            features.add_feature(node_id, index)
    return features
