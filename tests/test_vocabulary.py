"""Tests for vocabulary tree construction and lookup."""

import math
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from semantic_bow.config import ClusteringBackend, ScoringType, VocabularyConfig, WeightingType
from semantic_bow.descriptors import FeatureSet, distance, mean_value
from semantic_bow.errors import DimensionMismatch, InvalidConfiguration, UntrainedVocabulary
from semantic_bow.vocabulary import NodeSplitter, VocabularyTree
from semantic_bow.vocabulary.clustering import count_distinct, distinct_groups


def three_distinct_images() -> list[np.ndarray]:
    """Three images, each made of one repeated descriptor."""
    return [np.full((4, 32), value, dtype=np.uint8) for value in (0x00, 0x0F, 0xFF)]


class TestNodeSplitter:
    """Test suite for per-node clustering."""

    def test_few_distinct_descriptors(self):
        """Test that <= k distinct descriptors each become a cluster."""
        descriptors = np.array([[3], [1], [3], [2]], dtype=np.uint8)

        centers, groups = NodeSplitter(k=3).split(descriptors)

        np.testing.assert_array_equal(centers.ravel(), [3, 1, 2])
        assert [g.tolist() for g in groups] == [[0, 2], [1], [3]]

    def test_clusters_cover_all_rows(self, corpus: list[np.ndarray]):
        """Test that the clusters partition the input."""
        descriptors = corpus[0]

        centers, groups = NodeSplitter(k=5, seed=1).split(descriptors)

        assert 1 <= len(centers) <= 5
        assert all(len(g) > 0 for g in groups)
        members = np.sort(np.concatenate(groups))
        np.testing.assert_array_equal(members, np.arange(len(descriptors)))

    def test_centers_are_majority_votes(self, corpus: list[np.ndarray]):
        """Test that every centre is the majority vote of its members."""
        descriptors = corpus[1]
        centers, groups = NodeSplitter(k=4, seed=3, max_iterations=2).split(descriptors)

        for center, group in zip(centers, groups):
            np.testing.assert_array_equal(center, mean_value(descriptors[group]))

    def test_members_closest_to_own_center(self, corpus: list[np.ndarray]):
        """Test that k-majority converges to a nearest-centre assignment."""
        descriptors = corpus[2]
        centers, groups = NodeSplitter(k=4, seed=0).split(descriptors)

        for c, group in enumerate(groups):
            for row in group:
                own = distance(descriptors[row], centers[c])
                assert all(own <= distance(descriptors[row], other) for other in centers)

    def test_deterministic(self, corpus: list[np.ndarray]):
        """Test that a seed fixes the result."""
        first, _ = NodeSplitter(k=6, seed=11).split(corpus[3])
        second, _ = NodeSplitter(k=6, seed=11).split(corpus[3])

        np.testing.assert_array_equal(first, second)

    def test_executor_matches_serial(self, corpus: list[np.ndarray]):
        """Test that chunked assignment on a thread pool changes nothing."""
        serial_centers, serial_groups = NodeSplitter(k=5, seed=2).split(corpus[0])
        with ThreadPoolExecutor(max_workers=2) as pool:
            centers, groups = NodeSplitter(k=5, seed=2, executor=pool, chunk_size=16).split(
                corpus[0]
            )

        np.testing.assert_array_equal(centers, serial_centers)
        assert [g.tolist() for g in groups] == [g.tolist() for g in serial_groups]

    def test_kmeans_backend(self, corpus: list[np.ndarray]):
        """Test the scikit-learn backend produces binary centroids."""
        descriptors = corpus[4]

        centers, groups = NodeSplitter(k=4, backend=ClusteringBackend.KMEANS).split(descriptors)

        assert centers.dtype == np.uint8
        assert centers.shape[1] == 32
        assert sum(len(g) for g in groups) == len(descriptors)

    def test_distinct_helpers(self):
        descriptors = np.array([[5], [5], [1]], dtype=np.uint8)

        assert count_distinct(descriptors) == 2
        centers, groups = distinct_groups(descriptors)
        np.testing.assert_array_equal(centers.ravel(), [5, 1])
        assert [g.tolist() for g in groups] == [[0, 1], [2]]


class TestVocabularyCreation:
    """Test suite for building the tree."""

    def test_word_count(self, vocabulary: VocabularyTree):
        """Test that a 9^3 tree has at most 729 words."""
        assert 0 < vocabulary.n_words <= 9**3
        assert len(vocabulary) == vocabulary.n_words
        assert not vocabulary.is_empty
        assert vocabulary.effective_levels <= 3

    def test_topology(self, vocabulary: VocabularyTree):
        """Test root, parents and sibling ids."""
        nodes = vocabulary.nodes

        assert nodes[0].parent == -1
        assert nodes[0].word_id == -1
        for node in nodes:
            assert len(node.children) <= 9
            if node.children:
                # siblings are created together
                assert node.children == list(
                    range(node.children[0], node.children[0] + len(node.children))
                )
                assert all(nodes[c].parent == node.id for c in node.children)

    def test_words_numbered_depth_first(self, vocabulary: VocabularyTree):
        """Test that leaves get word ids in depth-first order."""
        order = []
        stack = [0]
        while stack:
            node = vocabulary.nodes[stack.pop()]
            if node.is_leaf:
                order.append(node.word_id)
            stack.extend(reversed(node.children))

        assert order == list(range(vocabulary.n_words))

    def test_idf_weights(self, corpus: list[np.ndarray], vocabulary: VocabularyTree):
        """Test that word weights equal log(N / N_i)."""
        document_frequency = np.zeros(vocabulary.n_words, dtype=np.int64)
        for descriptors in corpus:
            document_frequency[np.unique(vocabulary.quantize(descriptors).word_ids)] += 1

        for word_id in range(vocabulary.n_words):
            expected = (
                math.log(len(corpus) / document_frequency[word_id])
                if document_frequency[word_id] > 0
                else 0.0
            )
            assert vocabulary.word_weight(word_id) == pytest.approx(expected)

    def test_root_is_majority_vote(self, corpus: list[np.ndarray], vocabulary: VocabularyTree):
        np.testing.assert_array_equal(vocabulary.nodes[0].descriptor, mean_value(np.vstack(corpus)))

    def test_deterministic(
        self, corpus: list[np.ndarray], vocabulary_config: VocabularyConfig, vocabulary: VocabularyTree
    ):
        """Test that the same seed builds the same tree."""
        again = VocabularyTree.train(corpus, vocabulary_config)

        for expected, actual in zip(vocabulary.to_arrays(), again.to_arrays()):
            np.testing.assert_array_equal(expected, actual)

    def test_parallel_assignment_matches_serial(self, corpus: list[np.ndarray]):
        """Test that worker threads don't change the tree."""
        serial = VocabularyTree.train(corpus, VocabularyConfig(branching_factor=4, depth=2))
        parallel = VocabularyTree.train(
            corpus, VocabularyConfig(branching_factor=4, depth=2, n_jobs=3)
        )

        for expected, actual in zip(serial.to_arrays(), parallel.to_arrays()):
            np.testing.assert_array_equal(expected, actual)

    def test_identical_descriptors_stop_splitting(self):
        """Test that clusters of one distinct descriptor become leaves."""
        vocabulary = VocabularyTree.train(
            three_distinct_images(), VocabularyConfig(branching_factor=9, depth=3)
        )

        assert vocabulary.n_words == 3
        assert vocabulary.n_nodes == 4
        assert vocabulary.effective_levels == 1
        for word_id in range(3):
            assert vocabulary.word_weight(word_id) == pytest.approx(math.log(3))

    def test_feature_sets_accepted(self, corpus: list[np.ndarray]):
        """Test training from labeled feature sets."""
        features = [FeatureSet.from_arrays(d) for d in corpus[:2]]

        vocabulary = VocabularyTree.train(features, VocabularyConfig(branching_factor=3, depth=2))

        assert vocabulary.n_words > 0

    @pytest.mark.parametrize("weighting", [WeightingType.TF, WeightingType.BINARY])
    def test_unit_weights(self, corpus: list[np.ndarray], weighting: WeightingType):
        """Test that TF and BINARY weighting give every word weight 1."""
        vocabulary = VocabularyTree.train(
            corpus, VocabularyConfig(branching_factor=3, depth=2, weighting=weighting)
        )

        np.testing.assert_array_equal(vocabulary.weights, np.ones(vocabulary.n_words))

    def test_empty_corpus(self):
        """Test that a corpus without descriptors is rejected."""
        with pytest.raises(ValueError, match="No training descriptors"):
            VocabularyTree.train([np.empty((0, 32), dtype=np.uint8)])

    def test_wrong_descriptor_width(self):
        with pytest.raises(DimensionMismatch):
            VocabularyTree.train([np.zeros((5, 16), dtype=np.uint8)])

    def test_invalid_config(self):
        """Test that an invalid branching factor fails on construction."""
        with pytest.raises(InvalidConfiguration, match="branching_factor"):
            VocabularyTree(VocabularyConfig(branching_factor=1))


class TestVocabularyLookup:
    """Test suite for descriptor lookup and transforms."""

    def test_untrained(self):
        """Test that an empty vocabulary refuses to transform."""
        vocabulary = VocabularyTree()

        assert vocabulary.is_empty
        with pytest.raises(UntrainedVocabulary):
            vocabulary.transform(np.zeros((1, 32), dtype=np.uint8))
        with pytest.raises(UntrainedVocabulary):
            vocabulary.transform_descriptor(np.zeros(32, dtype=np.uint8))

    def test_wrong_width(self, vocabulary: VocabularyTree):
        with pytest.raises(DimensionMismatch):
            vocabulary.transform(np.zeros((2, 31), dtype=np.uint8))

    def test_descriptor_path(self, corpus: list[np.ndarray], vocabulary: VocabularyTree):
        """Test that the path runs from the root to the word's leaf."""
        lookup = vocabulary.transform_descriptor(corpus[0][0])
        nodes = vocabulary.nodes

        assert lookup.path[0] == 0
        assert nodes[lookup.path[-1]].word_id == lookup.word_id
        for parent, child in zip(lookup.path, lookup.path[1:]):
            assert nodes[child].parent == parent
        assert lookup.weight == vocabulary.word_weight(lookup.word_id)

    def test_greedy_descent(self, corpus: list[np.ndarray], vocabulary: VocabularyTree):
        """Test that every step picks the nearest child, lowest index on ties."""
        descriptor = corpus[3][17]
        lookup = vocabulary.transform_descriptor(descriptor)
        nodes = vocabulary.nodes

        for parent, child in zip(lookup.path, lookup.path[1:]):
            distances = [distance(descriptor, nodes[c].descriptor) for c in nodes[parent].children]
            assert nodes[parent].children[int(np.argmin(distances))] == child

    def test_batch_matches_single(self, corpus: list[np.ndarray], vocabulary: VocabularyTree):
        """Test that batched quantization equals per-descriptor lookup."""
        descriptors = corpus[5][:20]
        quantization = vocabulary.quantize(descriptors)

        for i, descriptor in enumerate(descriptors):
            assert quantization.word_ids[i] == vocabulary.transform_descriptor(descriptor).word_id

    def test_transform_normalized(self, corpus: list[np.ndarray], vocabulary: VocabularyTree):
        """Test that an L1-scored vocabulary produces L1-normalized vectors."""
        bow = vocabulary.transform(corpus[0])

        assert len(bow) > 0
        assert bow.total == pytest.approx(1.0)
        assert all(weight > 0 for weight in bow.values())

    def test_self_score(self, corpus: list[np.ndarray], vocabulary: VocabularyTree):
        """Test that an image scores highest against itself."""
        vectors = [vocabulary.transform(d) for d in corpus]

        for i, v in enumerate(vectors):
            scores = [vocabulary.score(v, w) for w in vectors]
            assert scores[i] == pytest.approx(1.0)
            assert int(np.argmax(scores)) == i

    def test_empty_image(self, vocabulary: VocabularyTree):
        """Test that an image without descriptors gives an empty vector."""
        assert vocabulary.transform(np.empty((0, 32), dtype=np.uint8)) == {}

    def test_transform_with_features(self, corpus: list[np.ndarray], vocabulary: VocabularyTree):
        """Test that the direct index groups weighted descriptors by leaf."""
        descriptors = corpus[1]
        bow, features = vocabulary.transform_with_features(descriptors, levels_up=0)
        quantization = vocabulary.quantize(descriptors)

        weighted = np.flatnonzero(quantization.weights > 0)
        indices = sorted(i for group in features.values() for i in group)
        assert indices == weighted.tolist()
        for node_id, group in features.items():
            assert {int(quantization.paths[i][quantization.paths[i] >= 0][-1]) for i in group} == {
                node_id
            }
        assert bow == vocabulary.transform(descriptors)

    def test_direct_index_above_root(self, corpus: list[np.ndarray], vocabulary: VocabularyTree):
        """Test that levels_up >= depth groups everything under the root."""
        _, features = vocabulary.transform_with_features(corpus[1], levels_up=10)

        assert set(features) <= {0}


class TestWordQueries:
    """Test suite for word accessors."""

    def test_words_from_root(self, vocabulary: VocabularyTree):
        assert vocabulary.words_from_node(0) == list(range(vocabulary.n_words))

    def test_parent_node(self, vocabulary: VocabularyTree):
        """Test walking up from a word."""
        leaf = next(node for node in vocabulary.nodes if node.word_id == 0)

        assert vocabulary.parent_node(0, 0) == leaf.id
        assert vocabulary.parent_node(0, 1) == leaf.parent
        assert vocabulary.parent_node(0, 99) == 0
        assert 0 in vocabulary.words_from_node(leaf.parent)

    def test_word_descriptor_is_copy(self, vocabulary: VocabularyTree):
        descriptor = vocabulary.word_descriptor(0)
        descriptor[:] = 0
        leaf = next(node for node in vocabulary.nodes if node.word_id == 0)

        assert descriptor is not leaf.descriptor

    def test_unknown_word(self, vocabulary: VocabularyTree):
        with pytest.raises(IndexError):
            vocabulary.word_weight(vocabulary.n_words)

    def test_stop_words(self, fresh_vocabulary: VocabularyTree, corpus: list[np.ndarray]):
        """Test that stop words disappear from BoW vectors."""
        threshold = float(np.median(fresh_vocabulary.weights))
        n_below = int((fresh_vocabulary.weights < threshold).sum())

        n_stopped = fresh_vocabulary.stop_words(threshold)

        assert n_stopped == n_below
        weights = fresh_vocabulary.weights
        assert np.all((weights == 0) | (weights >= threshold))
        bow = fresh_vocabulary.transform(corpus[0])
        assert all(fresh_vocabulary.word_weight(w) >= threshold for w in bow)

    def test_str(self, vocabulary: VocabularyTree):
        text = str(vocabulary)

        assert "k = 9" in text
        assert "L = 3" in text
        assert "tf-idf" in text
        assert f"Number of words = {vocabulary.n_words}" in text

    def test_score_type(self, vocabulary: VocabularyTree):
        assert vocabulary.scoring is ScoringType.L1_NORM
