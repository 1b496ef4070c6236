"""Semantic BoW - visual bag-of-words indexing for binary descriptors."""

__version__ = "0.1.0"

# Re-export main classes for convenient imports
from .bow import BowVector, FeatureVector, score
from .config import (
    ClusteringBackend,
    DatabaseConfig,
    ScoringType,
    SemanticFilterMode,
    VocabularyConfig,
    WeightingType,
    load_config,
)
from .database import Database, LabelTable, QueryResult
from .descriptors import FeatureSet, distance, mean_value
from .errors import (
    BowError,
    DimensionMismatch,
    InvalidConfiguration,
    MalformedPersistedData,
    UntrainedVocabulary,
)
from .vocabulary import VocabularyTree

__all__ = [
    "__version__",
    # Configuration
    "VocabularyConfig",
    "DatabaseConfig",
    "WeightingType",
    "ScoringType",
    "ClusteringBackend",
    "SemanticFilterMode",
    "load_config",
    # Descriptors
    "FeatureSet",
    "distance",
    "mean_value",
    # Vocabulary
    "VocabularyTree",
    # Vectors / Scoring
    "BowVector",
    "FeatureVector",
    "score",
    # Database
    "Database",
    "LabelTable",
    "QueryResult",
    # Errors
    "BowError",
    "DimensionMismatch",
    "UntrainedVocabulary",
    "MalformedPersistedData",
    "InvalidConfiguration",
]
