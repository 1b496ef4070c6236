"""Inverted-file image database.

Images are indexed by their BoW vectors. For every word the database keeps
an inverted list of (image id, weight, dominant label) entries, so a query
only touches the images that share at least one word with it:

1. Transform the query descriptors to a BoW vector
2. For every query word, evaluate the scoring term against each entry of
   the word's inverted list and accumulate it per image
3. Finalize the accumulated sums into scores and rank the images

Semantic filtering scales the contribution of every shared word by the
agreement between the query's and the image's labels at that word (WORD
mode), or scales the final score by the mean agreement (SCORE mode).

Image ids are assigned sequentially from 0. The database is append-only.
"""

from __future__ import annotations

import gzip
import logging
import math
import threading
from bisect import bisect_left
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any

import numpy as np
import yaml

from ..bow import BowVector, FeatureVector
from ..bow import score as score_vectors
from ..bow.scoring import Scorer, get_scorer
from ..config import DatabaseConfig, ScoringType, SemanticFilterMode, parse_enum
from ..descriptors import UNLABELED, FeatureSet
from ..errors import InvalidConfiguration, MalformedPersistedData
from ..vocabulary import VocabularyTree
from ..vocabulary.persistence import vocabulary_from_dict, vocabulary_to_dict
from .semantic import LabelTable, agreement, dominant_labels

logger = logging.getLogger(__name__)


@dataclass
class ImageEntry:
    """An image stored in the database.

    Attributes:
        image_id: Sequential id assigned on insertion
        bow_vector: BoW vector of the image
        feature_vector: Direct index (None when the direct index is disabled)
        class_ids: Semantic class per descriptor, shape (N,)
        instance_ids: Object instance per descriptor, shape (N,)
        word_labels: Dominant semantic class per word of the BoW vector
    """

    image_id: int
    bow_vector: BowVector
    feature_vector: FeatureVector | None
    class_ids: np.ndarray  # (N,) int64
    instance_ids: np.ndarray  # (N,) int64
    word_labels: dict[int, int] = field(default_factory=dict)


@dataclass
class InvertedList:
    """Entries of one word, in increasing image id order."""

    image_ids: list[int] = field(default_factory=list)
    weights: list[float] = field(default_factory=list)
    labels: list[int] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.image_ids)

    def append(self, image_id: int, weight: float, label: int = UNLABELED) -> None:
        self.image_ids.append(image_id)
        self.weights.append(weight)
        self.labels.append(label)

    def arrays(self, max_id: int = -1) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Entries as arrays, restricted to image ids below ``max_id`` if >= 0."""
        end = bisect_left(self.image_ids, max_id) if max_id >= 0 else len(self.image_ids)
        return (
            np.asarray(self.image_ids[:end], dtype=np.int64),
            np.asarray(self.weights[:end], dtype=np.float64),
            np.asarray(self.labels[:end], dtype=np.int64),
        )


@dataclass
class QueryResult:
    """Result from a database query.

    Attributes:
        image_id: ID of the matching image
        score: Similarity (or, for KL scoring, divergence) to the query
    """

    image_id: int
    score: float


class Database:
    """Inverted-file database of BoW vectors with optional direct index.

    All public operations are serialized by one lock, so a database can be
    shared between threads. The vocabulary is only read.
    """

    def __init__(
        self,
        vocabulary: VocabularyTree,
        use_direct_index: bool = False,
        direct_index_levels: int = 0,
        label_table: LabelTable | None = None,
        semantic_filter: SemanticFilterMode | str = SemanticFilterMode.NONE,
    ) -> None:
        """Initialize an empty database.

        Args:
            vocabulary: Vocabulary used to transform descriptors
            use_direct_index: Keep feature vectors of added images
            direct_index_levels: Levels above the leaves where the direct
                index groups descriptors
            label_table: Weights of semantic classes (all 1.0 when None)
            semantic_filter: Default semantic filter of queries

        Raises:
            InvalidConfiguration: If the options are inconsistent
        """
        if direct_index_levels < 0:
            raise InvalidConfiguration(
                f"direct_index_levels must be >= 0, got {direct_index_levels}"
            )
        self._vocabulary = vocabulary
        self._use_direct_index = use_direct_index
        self._direct_index_levels = direct_index_levels
        self._label_table = label_table if label_table is not None else LabelTable()
        self._semantic_filter = self._check_filter(semantic_filter)
        self._lock = threading.Lock()
        self._reset()

    @classmethod
    def from_config(cls, vocabulary: VocabularyTree, config: DatabaseConfig) -> Database:
        """Create a database from a DatabaseConfig, loading its label file."""
        config.validate()
        label_table = LabelTable.load(config.label_file) if config.label_file else None
        return cls(
            vocabulary,
            use_direct_index=config.use_direct_index,
            direct_index_levels=config.direct_index_levels,
            label_table=label_table,
            semantic_filter=config.semantic_filter,
        )

    def _reset(self) -> None:
        self._entries: list[ImageEntry] = []
        self._inverted_file: dict[int, InvertedList] = {}

    def _check_filter(
        self, mode: SemanticFilterMode | str | None, vocabulary: VocabularyTree | None = None
    ) -> SemanticFilterMode:
        mode = parse_enum(SemanticFilterMode, mode)
        if vocabulary is None:
            vocabulary = self._vocabulary
        scoring = vocabulary.scoring
        if mode is not SemanticFilterMode.NONE and not get_scorer(scoring).higher_is_better:
            raise InvalidConfiguration(
                f"Semantic filtering needs a similarity metric, not {scoring.name}"
            )
        return mode

    # ------------------------------------------------------------------
    # Properties

    @property
    def vocabulary(self) -> VocabularyTree:
        return self._vocabulary

    @property
    def scoring(self) -> ScoringType:
        return self._vocabulary.scoring

    @property
    def _scorer(self) -> Scorer:
        return get_scorer(self._vocabulary.scoring)

    @property
    def use_direct_index(self) -> bool:
        return self._use_direct_index

    @property
    def direct_index_levels(self) -> int:
        return self._direct_index_levels

    @property
    def label_table(self) -> LabelTable:
        return self._label_table

    @property
    def semantic_filter(self) -> SemanticFilterMode:
        return self._semantic_filter

    @property
    def size(self) -> int:
        """Return number of images in database."""
        return len(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __str__(self) -> str:
        n_entries = sum(len(inverted) for inverted in self._inverted_file.values())
        return (
            f"Database: Entries = {len(self)}, "
            f"Using direct index = {'yes' if self._use_direct_index else 'no'}"
            f" (levels up = {self._direct_index_levels}), "
            f"Semantic filter = {self._semantic_filter.name}, "
            f"Inverted entries = {n_entries}. {self._vocabulary}"
        )

    # ------------------------------------------------------------------
    # Insertion

    def _features(
        self,
        vocabulary: VocabularyTree,
        descriptors: np.ndarray | FeatureSet,
        labels: np.ndarray | None,
        instance_ids: np.ndarray | None,
    ) -> FeatureSet:
        if isinstance(descriptors, FeatureSet):
            if labels is None and instance_ids is None:
                return descriptors
            descriptors = descriptors.descriptors
        return FeatureSet.from_arrays(
            descriptors, labels, instance_ids, length=vocabulary.descriptor_bytes
        )

    def _describe(
        self, vocabulary: VocabularyTree, features: FeatureSet, with_direct_index: bool
    ) -> tuple[BowVector, FeatureVector | None, dict[int, int]]:
        """BoW vector, feature vector and per-word dominant labels of a feature set."""
        quantization = vocabulary.quantize(features.descriptors)
        bow = vocabulary.bow_vector(quantization)
        feature_vector = (
            vocabulary.feature_vector(quantization, self._direct_index_levels)
            if with_direct_index
            else None
        )
        weighted = quantization.weights > 0
        labels = dominant_labels(
            quantization.word_ids[weighted], features.class_ids[weighted]
        )
        word_labels = {word_id: labels.get(word_id, UNLABELED) for word_id in bow}
        return bow, feature_vector, word_labels

    def add(
        self,
        descriptors: np.ndarray | FeatureSet,
        labels: np.ndarray | None = None,
        instance_ids: np.ndarray | None = None,
    ) -> int:
        """Add an image to the database.

        Descriptors are quantized outside the lock. If the vocabulary is
        replaced meanwhile, they are quantized again with the new one.

        Args:
            descriptors: Shape (N, L) uint8, or a FeatureSet carrying labels
            labels: Semantic class per descriptor (-1 = unlabeled)
            instance_ids: Object instance per descriptor (-1 = none)

        Returns:
            Id of the new image

        Raises:
            UntrainedVocabulary: If the vocabulary is empty
            DimensionMismatch: If descriptors or labels have the wrong shape
        """
        while True:
            vocabulary = self._vocabulary
            features = self._features(vocabulary, descriptors, labels, instance_ids)
            bow, feature_vector, word_labels = self._describe(
                vocabulary, features, self._use_direct_index
            )

            with self._lock:
                if self._vocabulary is vocabulary:
                    image_id = len(self._entries)
                    self._store(
                        ImageEntry(
                            image_id=image_id,
                            bow_vector=bow,
                            feature_vector=feature_vector,
                            class_ids=features.class_ids.copy(),
                            instance_ids=features.instance_ids.copy(),
                            word_labels=word_labels,
                        )
                    )
                    break
            logger.debug("Vocabulary replaced during add, quantizing again")

        logger.debug(f"Added image {image_id}: {len(features)} features, {len(bow)} words")
        return image_id

    def _store(self, entry: ImageEntry) -> None:
        self._entries.append(entry)
        for word_id, weight in sorted(entry.bow_vector.items()):
            inverted = self._inverted_file.setdefault(word_id, InvertedList())
            inverted.append(entry.image_id, weight, entry.word_labels.get(word_id, UNLABELED))

    # ------------------------------------------------------------------
    # Query

    def query(
        self,
        descriptors: np.ndarray | FeatureSet,
        max_results: int = 1,
        labels: np.ndarray | None = None,
        semantic_filter: SemanticFilterMode | str | None = None,
        max_id: int = -1,
    ) -> list[QueryResult]:
        """Find the stored images most similar to a descriptor set.

        Only images sharing at least one word with the query are candidates.

        Args:
            descriptors: Shape (N, L) uint8, or a FeatureSet carrying labels
            max_results: Maximum number of results
            labels: Semantic class per query descriptor (-1 = unlabeled)
            semantic_filter: Filter for this query (database default if None)
            max_id: Only consider images with id < max_id (all if negative)

        Returns:
            Results best first (highest score, or lowest divergence for KL);
            equal scores are ordered by image id

        Raises:
            UntrainedVocabulary: If the vocabulary is empty
            DimensionMismatch: If descriptors or labels have the wrong shape
            InvalidConfiguration: If a semantic filter is used with KL scoring
        """
        while True:
            vocabulary = self._vocabulary
            mode = (
                self._semantic_filter
                if semantic_filter is None
                else self._check_filter(semantic_filter, vocabulary)
            )
            features = self._features(vocabulary, descriptors, labels, None)
            bow, _, word_labels = self._describe(vocabulary, features, with_direct_index=False)

            if max_results <= 0:
                return []

            with self._lock:
                if self._vocabulary is vocabulary:
                    image_ids, scores = self._score_candidates(bow, word_labels, mode, max_id)
                    break
            logger.debug("Vocabulary replaced during query, quantizing again")

        if len(image_ids) == 0:
            return []

        higher_is_better = get_scorer(vocabulary.scoring).higher_is_better
        key = scores if not higher_is_better else -scores
        order = np.lexsort((image_ids, key))[:max_results]
        results = [
            QueryResult(image_id=int(image_ids[i]), score=float(scores[i])) for i in order
        ]
        logger.debug(
            f"Query with {len(bow)} words: {len(image_ids)} candidates, "
            f"best {results[0].image_id} ({results[0].score:.4f})"
        )
        return results

    def _score_candidates(
        self,
        bow: BowVector,
        word_labels: dict[int, int],
        mode: SemanticFilterMode,
        max_id: int,
    ) -> tuple[np.ndarray, np.ndarray]:
        """Scores of all images sharing a word with ``bow``; caller holds the lock."""
        scorer = self._scorer
        n = len(self._entries)
        accumulated = np.zeros(n, dtype=np.float64)
        agreement_sum = np.zeros(n, dtype=np.float64)
        shared_words = np.zeros(n, dtype=np.int64)

        for word_id, query_weight in sorted(bow.items()):
            inverted = self._inverted_file.get(word_id)
            if inverted is None:
                continue
            ids, weights, entry_labels = inverted.arrays(max_id)
            if len(ids) == 0:
                continue

            np.add.at(shared_words, ids, 1)
            if mode is SemanticFilterMode.NONE:
                agreements = None
            else:
                agreements = agreement(
                    word_labels.get(word_id, UNLABELED), entry_labels, self._label_table
                )
                np.add.at(agreement_sum, ids, agreements)

            if scorer.is_decomposable:
                terms = scorer.term(np.float64(query_weight), weights)
                if mode is SemanticFilterMode.WORD:
                    terms = terms * agreements
                np.add.at(accumulated, ids, terms)

        candidates = np.flatnonzero(shared_words > 0)
        if len(candidates) == 0:
            return candidates, np.empty(0, dtype=np.float64)

        if scorer.is_decomposable:
            scores = scorer.finalize(accumulated[candidates])
        else:
            scores = np.array(
                [
                    score_vectors(bow, self._entries[i].bow_vector, self.scoring)
                    for i in candidates.tolist()
                ],
                dtype=np.float64,
            )

        if mode is SemanticFilterMode.SCORE:
            scores = scores * (agreement_sum[candidates] / shared_words[candidates])
        return candidates, np.asarray(scores, dtype=np.float64)

    # ------------------------------------------------------------------
    # Access

    def _entry(self, image_id: int) -> ImageEntry:
        if not 0 <= image_id < len(self._entries):
            raise IndexError(f"Image id {image_id} out of range [0, {len(self._entries)})")
        return self._entries[image_id]

    def get_entry(self, image_id: int) -> ImageEntry | None:
        """Get a stored image by id.

        Args:
            image_id: Image ID to look up

        Returns:
            ImageEntry if found, None otherwise
        """
        if 0 <= image_id < len(self._entries):
            return self._entries[image_id]
        return None

    def bow_vector(self, image_id: int) -> BowVector:
        """Stored BoW vector of an image (a copy)."""
        return self._entry(image_id).bow_vector.copy()

    def feature_vector(self, image_id: int) -> FeatureVector:
        """Stored direct index of an image (a copy).

        Raises:
            InvalidConfiguration: If the direct index is disabled
            IndexError: If the image id is unknown
        """
        if not self._use_direct_index:
            raise InvalidConfiguration("Direct index is disabled for this database")
        return self._entry(image_id).feature_vector.copy()

    def retrieve_features(self, image_id: int, node_id: int) -> list[int]:
        """Indices of an image's descriptors grouped under a direct-index node.

        Args:
            image_id: Stored image
            node_id: Node at the direct-index level

        Returns:
            Descriptor indices in increasing order, empty if none fell there

        Raises:
            InvalidConfiguration: If the direct index is disabled
            IndexError: If the image id is unknown
        """
        if not self._use_direct_index:
            raise InvalidConfiguration("Direct index is disabled for this database")
        return list(self._entry(image_id).feature_vector.get(node_id, []))

    def inverted_list(self, word_id: int) -> list[tuple[int, float]]:
        """(image id, weight) entries of a word, in image id order."""
        inverted = self._inverted_file.get(word_id)
        if inverted is None:
            return []
        return list(zip(inverted.image_ids, inverted.weights))

    def transform(self, descriptors: np.ndarray | FeatureSet) -> BowVector:
        """BoW vector of a descriptor set; the database is not modified."""
        return self._vocabulary.transform(descriptors)

    def score(self, v1: BowVector, v2: BowVector) -> float:
        return self._vocabulary.score(v1, v2)

    def clear(self) -> None:
        """Remove all images; ids start again from 0."""
        with self._lock:
            self._reset()

    def set_vocabulary(self, vocabulary: VocabularyTree) -> None:
        """Replace the vocabulary and remove all images.

        Raises:
            InvalidConfiguration: If the active semantic filter can't be used
                with the new vocabulary's scoring
        """
        with self._lock:
            previous = self._vocabulary
            self._vocabulary = vocabulary
            try:
                self._check_filter(self._semantic_filter)
            except InvalidConfiguration:
                self._vocabulary = previous
                raise
            self._reset()

    # ------------------------------------------------------------------
    # Persistence

    def to_dict(self) -> dict[str, Any]:
        """Plain-data snapshot of the database, vocabulary included."""
        with self._lock:
            images = [_entry_to_dict(entry) for entry in self._entries]
            vocabulary = self._vocabulary
        return {
            "database": {
                "use_direct_index": self._use_direct_index,
                "direct_index_levels": self._direct_index_levels,
                "semantic_filter": self._semantic_filter.name,
                "labels": self._label_table.to_dict(),
            },
            "vocabulary": vocabulary_to_dict(vocabulary),
            "images": images,
        }

    def save(self, path: str | Path) -> None:
        """Save database and vocabulary as YAML (gzip-compressed for ``.gz``)."""
        path = Path(path)
        data = self.to_dict()
        path.parent.mkdir(parents=True, exist_ok=True)
        with _open(path, "w") as f:
            yaml.safe_dump(data, f, sort_keys=False)
        logger.info(f"Saved database ({len(data['images'])} images) to {path}")

    @classmethod
    def from_dict(cls, data: Any) -> Database:
        """Inverse of :meth:`to_dict`.

        Raises:
            MalformedPersistedData: If sections are missing or invalid
        """
        if not isinstance(data, dict) or "vocabulary" not in data:
            raise MalformedPersistedData("Database document has no vocabulary section")
        vocabulary = vocabulary_from_dict(data["vocabulary"])
        options = data.get("database") or {}
        try:
            database = cls(
                vocabulary,
                use_direct_index=bool(options.get("use_direct_index", False)),
                direct_index_levels=int(options.get("direct_index_levels", 0)),
                label_table=LabelTable.from_dict(options.get("labels") or {}),
                semantic_filter=options.get("semantic_filter", SemanticFilterMode.NONE),
            )
            for image_id, image in enumerate(data.get("images") or []):
                database._store(
                    _entry_from_dict(
                        image, image_id, database.use_direct_index, vocabulary.n_words
                    )
                )
        except (InvalidConfiguration, KeyError, TypeError, ValueError, AttributeError) as e:
            if isinstance(e, MalformedPersistedData):
                raise
            raise MalformedPersistedData(f"Invalid database document: {e}") from e
        return database

    @classmethod
    def load(cls, path: str | Path) -> Database:
        """Load a database written by :meth:`save`.

        Raises:
            FileNotFoundError: If the file doesn't exist
            MalformedPersistedData: If the content is corrupt or truncated
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Database file not found: {path}")
        try:
            with _open(path, "r") as f:
                data = yaml.safe_load(f)
        except (yaml.YAMLError, OSError, EOFError, UnicodeDecodeError) as e:
            raise MalformedPersistedData(f"Cannot parse {path}: {e}") from e

        database = cls.from_dict(data)
        logger.info(f"Loaded database ({len(database)} images) from {path}")
        return database


def _open(path: Path, mode: str) -> IO[str]:
    if path.suffix.lower() == ".gz":
        return gzip.open(path, mode + "t", encoding="utf-8")
    return open(path, mode, encoding="utf-8")


def _entry_to_dict(entry: ImageEntry) -> dict[str, Any]:
    return {
        "id": entry.image_id,
        "bow": {int(w): float(v) for w, v in sorted(entry.bow_vector.items())},
        "features": (
            {int(n): [int(i) for i in idx] for n, idx in sorted(entry.feature_vector.items())}
            if entry.feature_vector is not None
            else None
        ),
        "class_ids": entry.class_ids.tolist(),
        "instance_ids": entry.instance_ids.tolist(),
        "word_labels": {int(w): int(c) for w, c in sorted(entry.word_labels.items())},
    }


def _entry_from_dict(
    data: dict[str, Any], image_id: int, with_features: bool, n_words: int
) -> ImageEntry:
    if int(data["id"]) != image_id:
        raise MalformedPersistedData(f"Image {data['id']} stored at position {image_id}")

    bow = BowVector({int(w): float(v) for w, v in (data.get("bow") or {}).items()})
    for word_id, weight in bow.items():
        if not 0 <= word_id < n_words:
            raise MalformedPersistedData(
                f"Image {image_id} has word {word_id} outside the vocabulary ({n_words} words)"
            )
        if not (math.isfinite(weight) and weight > 0):
            raise MalformedPersistedData(
                f"Image {image_id} has invalid weight {weight} for word {word_id}"
            )
    features = data.get("features")
    if with_features:
        if features is None:
            raise MalformedPersistedData(f"Image {image_id} has no direct index")
        feature_vector = FeatureVector(
            {int(n): [int(i) for i in idx] for n, idx in features.items()}
        )
    else:
        feature_vector = None

    class_ids = np.asarray(data.get("class_ids") or [], dtype=np.int64)
    instance_ids = np.asarray(data.get("instance_ids") or [], dtype=np.int64)
    if class_ids.shape != instance_ids.shape:
        raise MalformedPersistedData(f"Image {image_id} label arrays differ in length")

    word_labels = {int(w): int(c) for w, c in (data.get("word_labels") or {}).items()}
    if set(word_labels) != set(bow):
        raise MalformedPersistedData(f"Image {image_id} word labels don't match its words")

    return ImageEntry(
        image_id=image_id,
        bow_vector=bow,
        feature_vector=feature_vector,
        class_ids=class_ids,
        instance_ids=instance_ids,
        word_labels=word_labels,
    )
