"""Hierarchical vocabulary of visual words.

Key components:
- VocabularyTree: k-ary tree of binary centroids with IDF word weights
- NodeSplitter: Hamming clustering used to split each tree node
- save_vocabulary / load_vocabulary: text, binary and YAML persistence
"""

from .clustering import NodeSplitter
from .persistence import load_vocabulary, save_vocabulary
from .tree import Node, Quantization, VocabularyTree, WordLookup

__all__ = [
    # Tree
    "VocabularyTree",
    "Node",
    "Quantization",
    "WordLookup",
    # Clustering
    "NodeSplitter",
    # Persistence
    "load_vocabulary",
    "save_vocabulary",
]
