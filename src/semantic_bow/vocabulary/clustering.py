"""Clustering of binary descriptors for one vocabulary tree node.

The default backend is k-majority: k-means++ seeding on Hamming distance,
then alternating nearest-centre assignment and majority-vote centroid
updates until the assignment stops changing. The assignment step is the
expensive part and is split into row chunks that can run on a thread pool;
iterations themselves are sequential.

The KMEANS backend clusters the bit expansions of the descriptors with
scikit-learn and derives binary centroids from the resulting groups.
"""

from __future__ import annotations

import logging
from concurrent.futures import Executor

import numpy as np
from sklearn.cluster import MiniBatchKMeans

from ..config import ClusteringBackend
from ..descriptors import distance_matrix, mean_value, to_float_matrix

logger = logging.getLogger(__name__)


def count_distinct(descriptors: np.ndarray) -> int:
    """Number of distinct rows in a descriptor matrix."""
    if len(descriptors) < 2:
        return len(descriptors)
    return len(np.unique(descriptors, axis=0))


def distinct_groups(descriptors: np.ndarray) -> tuple[np.ndarray, list[np.ndarray]]:
    """One cluster per distinct descriptor, in order of first occurrence.

    Returns:
        Tuple of (centers (C, L), member row indices per center)
    """
    unique, first, inverse = np.unique(
        descriptors, axis=0, return_index=True, return_inverse=True
    )
    inverse = inverse.reshape(-1)
    order = np.argsort(first, kind="stable")
    centers = unique[order]
    groups = [np.flatnonzero(inverse == u) for u in order]
    return centers, groups


class NodeSplitter:
    """Partitions the descriptors of a node into at most k clusters."""

    def __init__(
        self,
        k: int,
        backend: ClusteringBackend = ClusteringBackend.KMAJORITY,
        max_iterations: int = 100,
        seed: int = 0,
        executor: Executor | None = None,
        chunk_size: int = 8192,
    ) -> None:
        """Initialize splitter.

        Args:
            k: Maximum number of clusters per split
            backend: Clustering algorithm
            max_iterations: Iteration cap for one split
            seed: Seed of the random generator used for initialisation
            executor: Optional thread pool for the assignment step
            chunk_size: Rows per assignment task
        """
        self._k = k
        self._backend = backend
        self._max_iterations = max_iterations
        self._rng = np.random.default_rng(seed)
        self._executor = executor
        self._chunk_size = chunk_size

    def split(self, descriptors: np.ndarray) -> tuple[np.ndarray, list[np.ndarray]]:
        """Split descriptors into clusters.

        When there are no more than k distinct descriptors, every distinct
        descriptor becomes its own cluster.

        Args:
            descriptors: Shape (N, L) uint8, N > 0

        Returns:
            Tuple of (centers (C, L) uint8, member row indices per center),
            with C <= k and no empty clusters
        """
        if count_distinct(descriptors) <= self._k:
            return distinct_groups(descriptors)

        if self._backend is ClusteringBackend.KMEANS:
            assignments = self._kmeans_assignments(descriptors)
        else:
            assignments = self._kmajority(descriptors)

        centers = []
        groups = []
        for c in range(self._k):
            members = np.flatnonzero(assignments == c)
            if len(members) == 0:
                continue
            groups.append(members)
            centers.append(mean_value(descriptors[members]))

        return np.stack(centers), groups

    def _kmajority(self, descriptors: np.ndarray) -> np.ndarray:
        centers = self._seed_centers(descriptors)
        previous: np.ndarray | None = None

        for iteration in range(self._max_iterations):
            assignments = self._assign(descriptors, centers)
            if previous is not None and np.array_equal(assignments, previous):
                logger.debug(f"k-majority converged after {iteration} iterations")
                break

            for c in range(len(centers)):
                members = descriptors[assignments == c]
                # Empty clusters keep their previous centre
                if len(members) > 0:
                    centers[c] = mean_value(members)
            previous = assignments
        else:
            logger.debug(
                f"k-majority stopped at max_iterations={self._max_iterations} "
                f"({len(descriptors)} descriptors)"
            )
            assignments = self._assign(descriptors, centers)

        return assignments

    def _seed_centers(self, descriptors: np.ndarray) -> np.ndarray:
        """k-means++ seeding with probability proportional to distance."""
        n = len(descriptors)
        chosen = [int(self._rng.integers(n))]
        min_dist = distance_matrix(descriptors, descriptors[chosen]).ravel()

        while len(chosen) < self._k:
            total = int(min_dist.sum())
            if total == 0:
                break
            # cut in [1, total] always lands on a row with positive distance
            cut = int(self._rng.integers(1, total + 1))
            index = int(np.searchsorted(np.cumsum(min_dist), cut, side="left"))
            chosen.append(index)
            new_dist = distance_matrix(descriptors, descriptors[index : index + 1]).ravel()
            min_dist = np.minimum(min_dist, new_dist)

        return descriptors[chosen].copy()

    def _assign(self, descriptors: np.ndarray, centers: np.ndarray) -> np.ndarray:
        """Index of the nearest centre per row; ties go to the lowest index."""

        def nearest(chunk: np.ndarray) -> np.ndarray:
            return np.argmin(distance_matrix(chunk, centers), axis=1)

        size = self._chunk_size
        chunks = [descriptors[i : i + size] for i in range(0, len(descriptors), size)]
        if self._executor is not None and len(chunks) > 1:
            parts = list(self._executor.map(nearest, chunks))
        else:
            parts = [nearest(chunk) for chunk in chunks]
        return np.concatenate(parts)

    def _kmeans_assignments(self, descriptors: np.ndarray) -> np.ndarray:
        kmeans = MiniBatchKMeans(
            n_clusters=self._k,
            random_state=int(self._rng.integers(2**31 - 1)),
            batch_size=1024,
            n_init="auto",
            max_iter=self._max_iterations,
        )
        return kmeans.fit_predict(to_float_matrix(descriptors))
