"""Hierarchical visual vocabulary for binary descriptors.

The vocabulary is a k-ary tree of centroid descriptors built by recursive
clustering:
1. Split the training descriptors into k clusters (Hamming k-majority)
2. Repeat inside every cluster until the configured depth is reached
3. Number the leaves ("visual words") depth-first
4. Weight each word by its inverse document frequency over training images

Looking up a descriptor walks from the root to a leaf, choosing the child
with the nearest centroid at every level, so it costs depth * k distances
instead of one per word.

Nodes live in a flat list addressed by integer id; every node stores its
parent id and the ids of its children.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np

from ..bow import BowVector, FeatureVector, build_bow_vector, build_feature_vector
from ..bow import score as score_vectors
from ..bow.scoring import get_scorer
from ..config import ScoringType, VocabularyConfig, WeightingType
from ..descriptors import FeatureSet, as_descriptor_matrix, distance_matrix, mean_value
from ..errors import MalformedPersistedData, UntrainedVocabulary
from .clustering import NodeSplitter, count_distinct

logger = logging.getLogger(__name__)

ROOT_ID = 0


@dataclass
class Node:
    """A vocabulary tree node.

    Attributes:
        id: Node id (index into the node list)
        parent: Parent node id, -1 for the root
        descriptor: Centroid, shape (L,) uint8
        children: Child node ids in cluster creation order
        word_id: Word id for leaves, -1 for internal nodes
        weight: Word weight for leaves
    """

    id: int
    parent: int
    descriptor: np.ndarray  # (L,) uint8
    children: list[int] = field(default_factory=list)
    word_id: int = -1
    weight: float = 0.0

    @property
    def is_leaf(self) -> bool:
        return not self.children


@dataclass
class WordLookup:
    """Result of looking up a single descriptor.

    Attributes:
        word_id: Visual word reached
        weight: Weight of that word
        path: Node ids from the root to the leaf
    """

    word_id: int
    weight: float
    path: list[int]


@dataclass
class Quantization:
    """Word assignment of a descriptor set.

    Attributes:
        word_ids: Word per descriptor, shape (N,)
        weights: Word weight per descriptor, shape (N,)
        paths: Node ids per level, shape (N, levels + 1), -1 below the leaf
    """

    word_ids: np.ndarray  # (N,) int64
    weights: np.ndarray  # (N,) float64
    paths: np.ndarray  # (N, levels + 1) int64

    def __len__(self) -> int:
        return len(self.word_ids)

    def nodes_at_level(self, level: int) -> np.ndarray:
        """Ancestor of every descriptor at ``level`` (0 = root).

        Descriptors whose leaf is shallower than ``level`` report their leaf.
        """
        if len(self.word_ids) == 0:
            return np.empty(0, dtype=np.int64)
        leaf_level = (self.paths >= 0).sum(axis=1) - 1
        columns = np.minimum(max(level, 0), leaf_level)
        return self.paths[np.arange(len(self.paths)), columns]


class VocabularyTree:
    """Vocabulary tree over binary descriptors with TF-IDF word weights.

    A tree is created empty and becomes usable after :meth:`create` or
    :meth:`load`. Once built it is only read, so one instance can serve
    concurrent lookups.
    """

    def __init__(self, config: VocabularyConfig | None = None) -> None:
        """Initialize an empty vocabulary.

        Args:
            config: Tree parameters (defaults: k=10, depth=5, TF-IDF, L1)

        Raises:
            InvalidConfiguration: If the configuration is out of range
        """
        self._config = config if config is not None else VocabularyConfig()
        self._config.validate()
        self._install([])

    # ------------------------------------------------------------------
    # Properties

    @property
    def config(self) -> VocabularyConfig:
        return self._config

    @property
    def branching_factor(self) -> int:
        return self._config.branching_factor

    @property
    def depth(self) -> int:
        return self._config.depth

    @property
    def weighting(self) -> WeightingType:
        return self._config.weighting

    @property
    def scoring(self) -> ScoringType:
        return self._config.scoring

    @property
    def descriptor_bytes(self) -> int:
        return self._config.descriptor_bytes

    @property
    def n_words(self) -> int:
        """Number of visual words (leaves)."""
        return len(self._words)

    @property
    def n_nodes(self) -> int:
        return len(self._nodes)

    @property
    def is_empty(self) -> bool:
        """True until the vocabulary has been created or loaded."""
        return not self._words

    @property
    def nodes(self) -> tuple[Node, ...]:
        return tuple(self._nodes)

    @property
    def weights(self) -> np.ndarray:
        """Word weights indexed by word id (a copy)."""
        return self._weights.copy()

    @property
    def effective_levels(self) -> int:
        """Depth of the deepest leaf."""
        return self._max_level

    def __len__(self) -> int:
        return self.n_words

    def __str__(self) -> str:
        weighting = {
            WeightingType.TF_IDF: "tf-idf",
            WeightingType.TF: "tf",
            WeightingType.IDF: "idf",
            WeightingType.BINARY: "binary",
        }[self.weighting]
        return (
            f"Vocabulary: k = {self.branching_factor}, L = {self.depth}, "
            f"Weighting = {weighting}, Scoring = {self.scoring.name}, "
            f"Number of words = {self.n_words}"
        )

    # ------------------------------------------------------------------
    # Training

    @classmethod
    def train(
        cls,
        training_features: Sequence[np.ndarray | FeatureSet],
        config: VocabularyConfig | None = None,
    ) -> VocabularyTree:
        """Create and train a vocabulary in one step."""
        vocabulary = cls(config)
        vocabulary.create(training_features)
        return vocabulary

    def create(self, training_features: Sequence[np.ndarray | FeatureSet]) -> None:
        """Build the tree and word weights from a training corpus.

        Replaces any previous content of this vocabulary.

        Args:
            training_features: One descriptor set per training image,
                each of shape (N_i, L) uint8 or a FeatureSet

        Raises:
            DimensionMismatch: If a descriptor set has the wrong width
            ValueError: If the corpus holds no descriptors
        """
        config = self._config
        config.validate()

        images = [self._descriptor_matrix(f) for f in training_features]
        non_empty = [m for m in images if len(m) > 0]
        if not non_empty:
            raise ValueError("No training descriptors to build a vocabulary from")
        features = np.vstack(non_empty)

        logger.info(
            f"Creating a {config.branching_factor}^{config.depth} vocabulary from "
            f"{len(features)} descriptors in {len(images)} images"
        )
        start_time = time.time()

        nodes = [Node(id=ROOT_ID, parent=-1, descriptor=mean_value(features))]
        executor = ThreadPoolExecutor(max_workers=config.n_jobs) if config.n_jobs > 1 else None
        try:
            splitter = NodeSplitter(
                k=config.branching_factor,
                backend=config.clustering,
                max_iterations=config.max_iterations,
                seed=config.seed,
                executor=executor,
            )
            self._hk_means_step(nodes, ROOT_ID, features, 1, splitter)
        finally:
            if executor is not None:
                executor.shutdown()

        self._install(nodes)
        self._set_node_weights(images)

        logger.info(
            f"Vocabulary created in {time.time() - start_time:.2f}s: "
            f"{self.n_words} words, {self.n_nodes} nodes"
        )

    def _hk_means_step(
        self,
        nodes: list[Node],
        parent_id: int,
        descriptors: np.ndarray,
        level: int,
        splitter: NodeSplitter,
    ) -> None:
        """Create the children of ``parent_id`` and recurse into them.

        All children of a node are created before any of them is split, so
        siblings have consecutive ids.
        """
        centers, groups = splitter.split(descriptors)

        child_ids = []
        for center in centers:
            child = Node(id=len(nodes), parent=parent_id, descriptor=center)
            nodes.append(child)
            nodes[parent_id].children.append(child.id)
            child_ids.append(child.id)

        if level >= self._config.depth:
            return

        for child_id, group in zip(child_ids, groups):
            members = descriptors[group]
            # A cluster of identical descriptors cannot be split any further
            if count_distinct(members) > 1:
                self._hk_means_step(nodes, child_id, members, level + 1, splitter)

    def _set_node_weights(self, images: list[np.ndarray]) -> None:
        """Assign word weights from the training corpus.

        IDF(word) = log(N / N_word) where N is the number of training images
        and N_word the number of them containing the word; words never seen
        get weight 0. TF and BINARY weighting use weight 1 everywhere.
        """
        if self.weighting in (WeightingType.TF, WeightingType.BINARY):
            weights = np.ones(self.n_words, dtype=np.float64)
        else:
            n_images = len(images)
            document_frequencies = np.zeros(self.n_words, dtype=np.int64)
            for descriptors in images:
                if len(descriptors) == 0:
                    continue
                words = np.unique(self.quantize(descriptors).word_ids)
                document_frequencies[words] += 1

            weights = np.zeros(self.n_words, dtype=np.float64)
            seen = document_frequencies > 0
            weights[seen] = np.log(n_images / document_frequencies[seen])

        self._set_weights(weights)

    # ------------------------------------------------------------------
    # Node storage

    def _install(self, nodes: list[Node]) -> None:
        """Replace the node list and rebuild word ids and lookup tables."""
        self._nodes = nodes
        self._words: list[int] = []

        # Depth-first, children in creation order
        stack = [ROOT_ID] if nodes else []
        while stack:
            node = nodes[stack.pop()]
            if node.is_leaf and node.id != ROOT_ID:
                node.word_id = len(self._words)
                self._words.append(node.id)
            else:
                node.word_id = -1
                stack.extend(reversed(node.children))

        n = len(nodes)
        self._is_leaf = np.array([node.is_leaf for node in nodes], dtype=bool)
        self._word_of_node = np.array([node.word_id for node in nodes], dtype=np.int64)
        self._child_ids: dict[int, np.ndarray] = {}
        self._child_centroids: dict[int, np.ndarray] = {}
        levels = np.zeros(n, dtype=np.int64)
        for node in nodes:
            if node.id != ROOT_ID:
                levels[node.id] = levels[node.parent] + 1
            if node.children:
                self._child_ids[node.id] = np.array(node.children, dtype=np.int64)
                self._child_centroids[node.id] = np.stack(
                    [nodes[c].descriptor for c in node.children]
                )
        self._max_level = int(levels.max()) if n else 0
        self._weights = np.array([nodes[w].weight for w in self._words], dtype=np.float64)

    def _set_weights(self, weights: np.ndarray) -> None:
        for word_id, node_id in enumerate(self._words):
            self._nodes[node_id].weight = float(weights[word_id])
        self._weights = np.asarray(weights, dtype=np.float64).copy()

    @classmethod
    def from_arrays(
        cls,
        config: VocabularyConfig,
        parents: np.ndarray,
        descriptors: np.ndarray,
        weights: np.ndarray,
    ) -> VocabularyTree:
        """Rebuild a vocabulary from flat node arrays.

        Node i has parent ``parents[i]`` (-1 for the root, which must be node
        0); children are ordered by id. Leaf weights are read from
        ``weights``; entries of internal nodes are ignored.

        Raises:
            MalformedPersistedData: If the arrays don't describe a valid tree
        """
        parents = np.asarray(parents, dtype=np.int64)
        descriptors = np.asarray(descriptors)
        weights = np.asarray(weights, dtype=np.float64)
        n = len(parents)

        if n == 0:
            raise MalformedPersistedData("Vocabulary has no nodes")
        if descriptors.shape != (n, config.descriptor_bytes) or len(weights) != n:
            raise MalformedPersistedData(
                f"Node arrays disagree: {n} parents, descriptors {descriptors.shape}, "
                f"{len(weights)} weights for {config.descriptor_bytes}-byte descriptors"
            )
        if parents[0] != -1:
            raise MalformedPersistedData("Node 0 must be the root (parent -1)")
        ids = np.arange(n)
        if n > 1 and (np.any(parents[1:] < 0) or np.any(parents[1:] >= ids[1:])):
            raise MalformedPersistedData("Every node's parent must precede it")
        if not np.all(np.isfinite(weights)) or np.any(weights < 0):
            raise MalformedPersistedData("Word weights must be finite and non-negative")

        nodes = [
            Node(id=i, parent=int(parents[i]), descriptor=descriptors[i].astype(np.uint8))
            for i in range(n)
        ]
        for node in nodes[1:]:
            nodes[node.parent].children.append(node.id)
        for node in nodes:
            if node.is_leaf:
                node.weight = float(weights[node.id])

        vocabulary = cls(config)
        vocabulary._install(nodes)
        return vocabulary

    def to_arrays(self) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Flat node arrays (parents, descriptors, weights) indexed by node id."""
        parents = np.array([node.parent for node in self._nodes], dtype=np.int64)
        descriptors = (
            np.stack([node.descriptor for node in self._nodes])
            if self._nodes
            else np.empty((0, self.descriptor_bytes), dtype=np.uint8)
        )
        weights = np.array(
            [node.weight if node.is_leaf else 0.0 for node in self._nodes],
            dtype=np.float64,
        )
        return parents, descriptors, weights

    # ------------------------------------------------------------------
    # Lookup

    def _check_trained(self) -> None:
        if self.is_empty:
            raise UntrainedVocabulary(
                "Vocabulary is empty; create() or load() it before transforming"
            )

    def _descriptor_matrix(self, features: np.ndarray | FeatureSet) -> np.ndarray:
        if isinstance(features, FeatureSet):
            features = features.descriptors
        return as_descriptor_matrix(features, self.descriptor_bytes)

    def quantize(self, descriptors: np.ndarray | FeatureSet) -> Quantization:
        """Find the word and root-to-leaf path of every descriptor.

        At every internal node the child with the smallest Hamming distance
        wins; ties go to the lowest child index.

        Args:
            descriptors: Shape (N, L) uint8 or a FeatureSet

        Raises:
            UntrainedVocabulary: If the vocabulary is empty
            DimensionMismatch: If descriptors don't have the configured length
        """
        self._check_trained()
        matrix = self._descriptor_matrix(descriptors)
        n = len(matrix)

        paths = np.full((n, self._max_level + 1), -1, dtype=np.int64)
        paths[:, 0] = ROOT_ID
        current = np.full(n, ROOT_ID, dtype=np.int64)
        active = np.ones(n, dtype=bool)

        level = 0
        while active.any():
            level += 1
            following = current.copy()
            for node_id in np.unique(current[active]).tolist():
                rows = np.flatnonzero(active & (current == node_id))
                nearest = np.argmin(
                    distance_matrix(matrix[rows], self._child_centroids[node_id]), axis=1
                )
                following[rows] = self._child_ids[node_id][nearest]
            current = following
            paths[active, level] = current[active]
            active &= ~self._is_leaf[current]

        word_ids = self._word_of_node[current]
        return Quantization(
            word_ids=word_ids,
            weights=self._weights[word_ids] if n else np.empty(0, dtype=np.float64),
            paths=paths,
        )

    def transform_descriptor(self, descriptor: np.ndarray) -> WordLookup:
        """Look up the word of a single descriptor.

        Args:
            descriptor: Shape (L,) uint8

        Returns:
            Word id, word weight and root-to-leaf node path
        """
        quantization = self.quantize(np.asarray(descriptor).reshape(1, -1))
        path = [int(node_id) for node_id in quantization.paths[0] if node_id >= 0]
        return WordLookup(
            word_id=int(quantization.word_ids[0]),
            weight=float(quantization.weights[0]),
            path=path,
        )

    def transform(self, descriptors: np.ndarray | FeatureSet) -> BowVector:
        """Convert an image's descriptors to a BoW vector.

        Args:
            descriptors: Shape (N, L) uint8 or a FeatureSet

        Returns:
            BoW vector weighted and normalized per the vocabulary config
        """
        quantization = self.quantize(descriptors)
        return self.bow_vector(quantization)

    def transform_with_features(
        self, descriptors: np.ndarray | FeatureSet, levels_up: int
    ) -> tuple[BowVector, FeatureVector]:
        """Convert descriptors to a BoW vector and a direct-index feature vector.

        Args:
            descriptors: Shape (N, L) uint8 or a FeatureSet
            levels_up: Levels above the leaves at which descriptors are grouped
                (0 groups by leaf, >= depth groups everything under the root)

        Returns:
            Tuple of (BoW vector, feature vector)
        """
        quantization = self.quantize(descriptors)
        return self.bow_vector(quantization), self.feature_vector(quantization, levels_up)

    def bow_vector(self, quantization: Quantization) -> BowVector:
        """BoW vector of an existing quantization."""
        return build_bow_vector(
            quantization.word_ids,
            quantization.weights,
            self.weighting,
            get_scorer(self.scoring).normalization,
        )

    def feature_vector(self, quantization: Quantization, levels_up: int) -> FeatureVector:
        """Direct-index grouping of an existing quantization."""
        level = max(self.depth - levels_up, 0)
        return build_feature_vector(quantization.nodes_at_level(level), quantization.weights)

    def score(self, v1: BowVector, v2: BowVector) -> float:
        """Compare two BoW vectors with this vocabulary's scoring type."""
        return score_vectors(v1, v2, self.scoring)

    # ------------------------------------------------------------------
    # Word queries

    def _word_node(self, word_id: int) -> Node:
        if not 0 <= word_id < self.n_words:
            raise IndexError(f"Word id {word_id} out of range [0, {self.n_words})")
        return self._nodes[self._words[word_id]]

    def word_weight(self, word_id: int) -> float:
        return self._word_node(word_id).weight

    def word_descriptor(self, word_id: int) -> np.ndarray:
        """Centroid of a word (a copy)."""
        return self._word_node(word_id).descriptor.copy()

    def parent_node(self, word_id: int, levels_up: int) -> int:
        """Id of the ancestor ``levels_up`` levels above a word, stopping at the root."""
        node_id = self._word_node(word_id).id
        while levels_up > 0 and node_id != ROOT_ID:
            node_id = self._nodes[node_id].parent
            levels_up -= 1
        return node_id

    def words_from_node(self, node_id: int) -> list[int]:
        """Ids of all words below a node, in increasing order."""
        if not 0 <= node_id < self.n_nodes:
            raise IndexError(f"Node id {node_id} out of range [0, {self.n_nodes})")
        words = []
        stack = [node_id]
        while stack:
            node = self._nodes[stack.pop()]
            if node.word_id >= 0:
                words.append(node.word_id)
            stack.extend(node.children)
        return sorted(words)

    def stop_words(self, min_weight: float) -> int:
        """Zero the weight of every word lighter than ``min_weight``.

        Zero-weight words are skipped by transforms, so frequent words can
        be removed from BoW vectors this way.

        Returns:
            Number of words whose weight was below ``min_weight``
        """
        weights = self._weights.copy()
        below = weights < min_weight
        weights[below] = 0.0
        self._set_weights(weights)
        return int(below.sum())

    # ------------------------------------------------------------------
    # Persistence

    def save(self, path: str | Path) -> None:
        """Save the vocabulary; the format follows the file suffix.

        ``.txt`` writes text, ``.npz`` compressed binary arrays and
        ``.yml``/``.yaml`` (optionally ``.gz``) a YAML document.
        """
        from .persistence import save_vocabulary

        save_vocabulary(self, path)

    @classmethod
    def load(cls, path: str | Path) -> VocabularyTree:
        """Load a vocabulary written by :meth:`save`.

        Raises:
            FileNotFoundError: If the file doesn't exist
            MalformedPersistedData: If the content is corrupt or truncated
        """
        from .persistence import load_vocabulary

        return load_vocabulary(path)

    @classmethod
    def load_from_text_file(cls, path: str | Path) -> VocabularyTree:
        """Load a text vocabulary, including the legacy DBoW2 text layout.

        Word ids are always assigned depth-first from the tree topology, as
        for trained trees, so every saved format restores the same ids. For a
        legacy file whose leaf lines are not in depth-first order (DBoW2 writes
        nodes breadth-first) the ids differ from DBoW2's, which numbers leaves
        in file order. Word descriptors and weights are unaffected; compare
        BoW vectors only between vectors computed by this library.
        """
        from .persistence import load_text

        return load_text(path)
