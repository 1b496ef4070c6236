"""Tests for semantic label tables and label-aware queries."""

import json
from pathlib import Path

import numpy as np
import pytest

from semantic_bow.config import VocabularyConfig
from semantic_bow.database import (
    Database,
    LabelInfo,
    LabelTable,
    SemanticFilterMode,
    agreement,
    dominant_labels,
)
from semantic_bow.descriptors import FeatureSet
from semantic_bow.errors import InvalidConfiguration, MalformedPersistedData
from semantic_bow.vocabulary import VocabularyTree


class TestLabelTable:
    """Test suite for LabelTable."""

    def test_load_json(self, config_dir: Path):
        """Test loading the example label file."""
        table = LabelTable.load(config_dir / "labels.json")

        assert len(table) == 7
        assert table.name(0) == "road"
        assert table.weight(0) == 1.0
        assert table.weight(11) == 0.0
        assert table.weight(13) == 0.5
        assert 11 in table

    def test_unknown_class_weighs_one(self):
        table = LabelTable({1: LabelInfo("car", 0.2)})

        assert table.weight(-1) == 1.0
        assert table.weight(42) == 1.0
        assert table.name(42) is None

    def test_vectorized_weights(self):
        table = LabelTable({1: LabelInfo("car", 0.2), 2: LabelInfo("person", 0.0)})

        np.testing.assert_allclose(table.weights(np.array([2, -1, 1, 7])), [0.0, 1.0, 0.2, 1.0])

    def test_load_yaml_with_labels_section(self, tmp_path: Path):
        """Test a YAML label file nested under ``labels``."""
        path = tmp_path / "labels.yaml"
        path.write_text("labels:\n  3: sky\n  4: {name: person, weight: 0.25}\n")

        table = LabelTable.load(path)

        assert table.name(3) == "sky"
        assert table.weight(4) == 0.25

    def test_round_trip_dict(self):
        table = LabelTable({4: LabelInfo("person", 0.25)})

        again = LabelTable.from_dict(table.to_dict())

        assert again.to_dict() == {4: {"name": "person", "weight": 0.25}}

    def test_weight_out_of_range(self, tmp_path: Path):
        path = tmp_path / "labels.json"
        path.write_text(json.dumps({"1": {"name": "car", "weight": 1.5}}))

        with pytest.raises(InvalidConfiguration, match=r"must be in \[0, 1\]"):
            LabelTable.load(path)

    def test_invalid_class_id(self):
        with pytest.raises(InvalidConfiguration, match="Invalid class id"):
            LabelTable.from_dict({"car": "car"})

    def test_invalid_entry(self):
        with pytest.raises(InvalidConfiguration, match="Invalid label entry"):
            LabelTable.from_dict({"1": {"weight": 0.5}})

    def test_unparsable_file(self, tmp_path: Path):
        path = tmp_path / "labels.json"
        path.write_text("{not json")

        with pytest.raises(MalformedPersistedData, match="Cannot parse label file"):
            LabelTable.load(path)

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(FileNotFoundError, match="Label file not found"):
            LabelTable.load(tmp_path / "labels.json")


class TestDominantLabels:
    """Test suite for per-word dominant labels."""

    def test_most_frequent_label(self):
        word_ids = np.array([1, 1, 1, 2, 2, 3])
        class_ids = np.array([5, 5, 4, -1, -1, 7])

        assert dominant_labels(word_ids, class_ids) == {1: 5, 2: -1, 3: 7}

    def test_unlabeled_ignored(self):
        """Test that unlabeled descriptors don't outvote labeled ones."""
        assert dominant_labels(np.array([1, 1, 1]), np.array([-1, -1, 6])) == {1: 6}

    def test_tie_lowest_class(self):
        assert dominant_labels(np.array([4, 4]), np.array([3, 2])) == {4: 2}

    def test_no_descriptors(self):
        assert dominant_labels(np.empty(0, dtype=np.int64), np.empty(0, dtype=np.int64)) == {}


class TestAgreement:
    """Test suite for label agreement."""

    def test_conflicting_labels(self):
        """Test that different labels disagree and unlabeled entries are neutral."""
        result = agreement(5, np.array([5, -1, 4]), LabelTable())

        np.testing.assert_array_equal(result, [1.0, 1.0, 0.0])

    def test_table_weights(self):
        """Test that class weights scale agreement from either side."""
        table = LabelTable({11: LabelInfo("person", 0.0), 13: LabelInfo("car", 0.5)})

        np.testing.assert_array_equal(agreement(-1, np.array([11, 13, -1]), table), [0.0, 0.5, 1.0])
        np.testing.assert_array_equal(agreement(13, np.array([-1, 13, 11]), table), [0.5, 0.5, 0.0])


class TestSemanticQueries:
    """Test suite for semantic filtering in database queries."""

    def test_disjoint_labels_score_lower(self, corpus: list[np.ndarray], vocabulary: VocabularyTree):
        """Test that identical descriptors with other labels lose under filtering."""
        descriptors = corpus[0]
        n = len(descriptors)
        database = Database(vocabulary)
        same = database.add(descriptors, labels=np.full(n, 1))
        other = database.add(descriptors, labels=np.full(n, 2))

        unfiltered = {
            r.image_id: r.score
            for r in database.query(descriptors, 2, labels=np.full(n, 1))
        }
        filtered = {
            r.image_id: r.score
            for r in database.query(descriptors, 2, labels=np.full(n, 1), semantic_filter="word")
        }

        assert unfiltered[same] == pytest.approx(1.0)
        assert unfiltered[other] == pytest.approx(1.0)
        assert filtered[same] == pytest.approx(1.0)
        assert filtered[other] < unfiltered[other]
        assert filtered[other] == pytest.approx(0.0)

    def test_score_mode(self, corpus: list[np.ndarray], vocabulary: VocabularyTree):
        """Test that SCORE mode rescales by the fraction of agreeing words."""
        descriptors = corpus[1]
        n = len(descriptors)
        database = Database(vocabulary, semantic_filter=SemanticFilterMode.SCORE)
        database.add(descriptors, labels=np.full(n, 3))

        agreeing = database.query(descriptors, 1, labels=np.full(n, 3))
        conflicting = database.query(descriptors, 1, labels=np.full(n, 4))

        assert agreeing[0].score == pytest.approx(1.0)
        assert conflicting[0].score == pytest.approx(0.0)

    def test_unlabeled_query_is_unfiltered(self, corpus: list[np.ndarray], vocabulary: VocabularyTree):
        """Test that without labels or class weights filtering changes nothing."""
        database = Database(vocabulary, semantic_filter=SemanticFilterMode.WORD)
        for descriptors in corpus:
            database.add(descriptors)

        for descriptors in corpus:
            filtered = database.query(descriptors, 6)
            unfiltered = database.query(descriptors, 6, semantic_filter=SemanticFilterMode.NONE)

            assert [r.image_id for r in filtered] == [r.image_id for r in unfiltered]
            for a, b in zip(filtered, unfiltered):
                assert a.score == pytest.approx(b.score)

    def test_zero_weight_class_removed(self, corpus: list[np.ndarray], vocabulary: VocabularyTree):
        """Test that a class of weight 0 never contributes to a match."""
        descriptors = corpus[2]
        n = len(descriptors)
        table = LabelTable({11: LabelInfo("person", 0.0)})
        database = Database(vocabulary, label_table=table, semantic_filter="word")
        database.add(FeatureSet.from_arrays(descriptors, np.full(n, 11)))

        results = database.query(descriptors, 1)

        assert results[0].score == pytest.approx(0.0)

    def test_word_labels_stored(self, corpus: list[np.ndarray], vocabulary: VocabularyTree):
        descriptors = corpus[3]
        database = Database(vocabulary)
        image_id = database.add(descriptors, labels=np.full(len(descriptors), 8))

        entry = database.get_entry(image_id)

        assert set(entry.word_labels) == set(entry.bow_vector)
        assert set(entry.word_labels.values()) == {8}

    def test_kl_rejects_filter(self, corpus: list[np.ndarray]):
        """Test that semantic filtering needs a similarity metric."""
        vocabulary = VocabularyTree.train(
            corpus, VocabularyConfig(branching_factor=3, depth=2, scoring="kl")
        )

        with pytest.raises(InvalidConfiguration, match="similarity metric"):
            Database(vocabulary, semantic_filter="word")

        database = Database(vocabulary)
        database.add(corpus[0])
        with pytest.raises(InvalidConfiguration):
            database.query(corpus[0], 1, semantic_filter="score")
