"""Shared fixtures: a deterministic synthetic descriptor corpus."""

from pathlib import Path

import numpy as np
import pytest

from semantic_bow import VocabularyConfig, VocabularyTree

N_IMAGES = 6
PROTOTYPES_PER_IMAGE = 20
VARIANTS_PER_PROTOTYPE = 5
DESCRIPTOR_BYTES = 32

CONFIG_DIR = Path(__file__).parent.parent / "config"


def make_image(rng: np.random.Generator) -> np.ndarray:
    """Random prototypes, each repeated with up to 3 flipped bits.

    Returns:
        Descriptors, shape (PROTOTYPES_PER_IMAGE * VARIANTS_PER_PROTOTYPE, 32)
    """
    prototypes = rng.integers(0, 256, size=(PROTOTYPES_PER_IMAGE, DESCRIPTOR_BYTES), dtype=np.uint8)
    rows = []
    for prototype in prototypes:
        for _ in range(VARIANTS_PER_PROTOTYPE):
            bits = np.unpackbits(prototype)
            flips = rng.choice(bits.size, size=rng.integers(0, 4), replace=False)
            bits[flips] ^= 1
            rows.append(np.packbits(bits))
    return np.stack(rows)


@pytest.fixture(scope="session")
def corpus() -> list[np.ndarray]:
    """Six images of 100 ORB-sized descriptors each."""
    rng = np.random.default_rng(42)
    return [make_image(rng) for _ in range(N_IMAGES)]


@pytest.fixture(scope="session")
def vocabulary_config() -> VocabularyConfig:
    return VocabularyConfig(branching_factor=9, depth=3, seed=7)


@pytest.fixture(scope="session")
def vocabulary(corpus: list[np.ndarray], vocabulary_config: VocabularyConfig) -> VocabularyTree:
    """A 9^3 TF-IDF / L1 vocabulary trained on the corpus.

    Session scoped: tests must not mutate it (use ``fresh_vocabulary``).
    """
    return VocabularyTree.train(corpus, vocabulary_config)


@pytest.fixture
def fresh_vocabulary(corpus: list[np.ndarray], vocabulary_config: VocabularyConfig) -> VocabularyTree:
    """A vocabulary owned by one test."""
    return VocabularyTree.train(corpus, vocabulary_config)


@pytest.fixture
def config_dir() -> Path:
    """Directory of the example configuration files."""
    return CONFIG_DIR
