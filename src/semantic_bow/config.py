"""Configuration for vocabulary training and the inverted-file database.

Configuration can be built in code or read from a YAML file with a
``vocabulary:`` and an optional ``database:`` section, e.g.::

    vocabulary:
      branching_factor: 9
      depth: 3
      weighting: tf_idf
      scoring: l1_norm
      descriptor_bytes: 32
    database:
      use_direct_index: true
      direct_index_levels: 1
      semantic_filter: word
      label_file: config/labels.json

Enum values may be given by name (any case) or by their integer code.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from enum import Enum, IntEnum
from pathlib import Path
from typing import Any, TypeVar

import yaml

from .errors import InvalidConfiguration


class WeightingType(IntEnum):
    """How a word's weight inside a BoW vector is computed."""

    TF_IDF = 0
    TF = 1
    IDF = 2
    BINARY = 3


class ScoringType(IntEnum):
    """Metric used to compare two BoW vectors."""

    L1_NORM = 0
    L2_NORM = 1
    CHI_SQUARE = 2
    KL = 3
    BHATTACHARYYA = 4
    DOT_PRODUCT = 5


class ClusteringBackend(Enum):
    """Algorithm used to split the descriptors of one tree node."""

    KMAJORITY = "KMAJORITY"  # Hamming distance + majority-vote centroids
    KMEANS = "KMEANS"  # scikit-learn k-means on bit expansions


class SemanticFilterMode(Enum):
    """Where semantic labels gate query results."""

    NONE = "NONE"
    WORD = "WORD"  # per inverted-list entry
    SCORE = "SCORE"  # rescale the final score


E = TypeVar("E", bound=Enum)


def parse_enum(enum_type: type[E], value: Any) -> E:
    """Resolve a member of ``enum_type`` from a member, name or value.

    Raises:
        InvalidConfiguration: If the value names no member
    """
    if isinstance(value, enum_type):
        return value
    if isinstance(value, str):
        key = value.strip().upper().replace("-", "_")
        if key in enum_type.__members__:
            return enum_type.__members__[key]
    try:
        return enum_type(value)
    except ValueError:
        pass
    choices = ", ".join(m.name.lower() for m in enum_type)
    raise InvalidConfiguration(
        f"Unknown {enum_type.__name__} {value!r} (expected one of: {choices})"
    )


def parse_int(name: str, value: Any) -> int:
    """Integer value of a numeric option given as a number or numeric string.

    Raises:
        InvalidConfiguration: If the value is not a whole number
    """
    if isinstance(value, bool):
        raise InvalidConfiguration(f"{name} must be an integer, got {value!r}")
    try:
        number = int(value)
    except (TypeError, ValueError, OverflowError) as e:
        raise InvalidConfiguration(f"{name} must be an integer, got {value!r}") from e
    if not isinstance(value, str) and number != value:
        raise InvalidConfiguration(f"{name} must be an integer, got {value!r}")
    return number


@dataclass
class VocabularyConfig:
    """Parameters fixed when a vocabulary tree is built.

    Attributes:
        branching_factor: Children per internal node (k)
        depth: Number of levels below the root (L)
        weighting: Word weighting scheme
        scoring: Similarity metric between BoW vectors
        descriptor_bytes: Descriptor length in bytes (ORB: 32)
        clustering: Node splitting algorithm
        max_iterations: Upper bound on clustering iterations per node
        seed: Seed for k-means++ initialisation
        n_jobs: Worker threads for the cluster assignment step
    """

    branching_factor: int = 10
    depth: int = 5
    weighting: WeightingType = WeightingType.TF_IDF
    scoring: ScoringType = ScoringType.L1_NORM
    descriptor_bytes: int = 32
    clustering: ClusteringBackend = ClusteringBackend.KMAJORITY
    max_iterations: int = 100
    seed: int = 0
    n_jobs: int = 1

    def __post_init__(self) -> None:
        self.weighting = parse_enum(WeightingType, self.weighting)
        self.scoring = parse_enum(ScoringType, self.scoring)
        self.clustering = parse_enum(ClusteringBackend, self.clustering)
        for name in (
            "branching_factor",
            "depth",
            "descriptor_bytes",
            "max_iterations",
            "seed",
            "n_jobs",
        ):
            setattr(self, name, parse_int(name, getattr(self, name)))

    def validate(self) -> None:
        """Check ranges of all numeric parameters.

        Raises:
            InvalidConfiguration: If any parameter is out of range
        """
        if self.branching_factor < 2:
            raise InvalidConfiguration(
                f"branching_factor must be >= 2, got {self.branching_factor}"
            )
        if self.depth < 1:
            raise InvalidConfiguration(f"depth must be >= 1, got {self.depth}")
        if self.descriptor_bytes < 1:
            raise InvalidConfiguration(
                f"descriptor_bytes must be >= 1, got {self.descriptor_bytes}"
            )
        if self.max_iterations < 1:
            raise InvalidConfiguration(
                f"max_iterations must be >= 1, got {self.max_iterations}"
            )
        if self.n_jobs < 1:
            raise InvalidConfiguration(f"n_jobs must be >= 1, got {self.n_jobs}")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VocabularyConfig:
        config = cls(**_known_fields(cls, data, "vocabulary"))
        config.validate()
        return config


@dataclass
class DatabaseConfig:
    """Options for an inverted-file database.

    Attributes:
        use_direct_index: Store feature vectors for direct-index lookups
        direct_index_levels: Levels above the leaves where features are grouped
        semantic_filter: Default semantic gating policy for queries
        label_file: Optional JSON/YAML class label table
    """

    use_direct_index: bool = False
    direct_index_levels: int = 0
    semantic_filter: SemanticFilterMode = SemanticFilterMode.NONE
    label_file: Path | None = None

    def __post_init__(self) -> None:
        self.semantic_filter = parse_enum(SemanticFilterMode, self.semantic_filter)
        self.direct_index_levels = parse_int("direct_index_levels", self.direct_index_levels)
        if self.label_file is not None:
            self.label_file = Path(self.label_file)

    def validate(self) -> None:
        if self.direct_index_levels < 0:
            raise InvalidConfiguration(
                f"direct_index_levels must be >= 0, got {self.direct_index_levels}"
            )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DatabaseConfig:
        config = cls(**_known_fields(cls, data, "database"))
        config.validate()
        return config


def _known_fields(cls: type, data: dict[str, Any], section: str) -> dict[str, Any]:
    names = {f.name for f in fields(cls)}
    unknown = set(data) - names
    if unknown:
        raise InvalidConfiguration(
            f"Unknown {section} option(s): {', '.join(sorted(unknown))}"
        )
    return dict(data)


def load_config(path: str | Path) -> tuple[VocabularyConfig, DatabaseConfig]:
    """Load vocabulary and database configuration from a YAML file.

    A relative ``label_file`` is resolved against the config file's directory.

    Args:
        path: Path to the YAML configuration

    Returns:
        Tuple of (vocabulary config, database config)

    Raises:
        FileNotFoundError: If the file doesn't exist
        InvalidConfiguration: If the file content is invalid
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise InvalidConfiguration(f"Invalid configuration in {path}")

    unknown = set(data) - {"vocabulary", "database"}
    if unknown:
        raise InvalidConfiguration(
            f"Unknown section(s) in {path}: {', '.join(sorted(unknown))}"
        )

    vocabulary = VocabularyConfig.from_dict(data.get("vocabulary") or {})
    database = DatabaseConfig.from_dict(data.get("database") or {})

    if database.label_file is not None and not database.label_file.is_absolute():
        database.label_file = path.parent / database.label_file

    return vocabulary, database
