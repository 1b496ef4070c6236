"""Saving and loading vocabulary trees.

Three lossless formats, chosen by file suffix:

``.txt`` (optionally ``.txt.gz``)
    Header ``k depth scoring weighting descriptor_bytes``, then one line per
    node ``id parent is_leaf b0 ... bL-1 weight``. The legacy DBoW2 text
    layout (header ``k depth scoring weighting``, root omitted, node lines
    ``parent is_leaf b0 ... bL-1 weight``) is also accepted on load.
``.npz``
    Compressed numpy arrays.
``.yml`` / ``.yaml`` (optionally ``.gz``)
    A YAML document; the same mapping is embedded in saved databases.

Weights are written with ``repr`` so floats round-trip exactly.
"""

from __future__ import annotations

import gzip
import logging
import zipfile
from pathlib import Path
from typing import IO, Any

import numpy as np
import yaml

from ..config import ScoringType, VocabularyConfig, WeightingType, parse_enum
from ..descriptors import from_string, to_string
from ..errors import InvalidConfiguration, MalformedPersistedData
from .tree import VocabularyTree

logger = logging.getLogger(__name__)

TEXT_SUFFIXES = (".txt",)
BINARY_SUFFIXES = (".npz",)
YAML_SUFFIXES = (".yml", ".yaml")


def _open(path: Path, mode: str) -> IO[str]:
    if path.suffix.lower() == ".gz":
        return gzip.open(path, mode + "t", encoding="utf-8")
    return open(path, mode, encoding="utf-8")


def file_format(path: str | Path) -> str:
    """Suffix that selects the format, ignoring a trailing ``.gz``."""
    suffixes = [s.lower() for s in Path(path).suffixes]
    if suffixes and suffixes[-1] == ".gz":
        suffixes = suffixes[:-1]
    return suffixes[-1] if suffixes else ""


def _check_exists(path: Path) -> None:
    if not path.exists():
        raise FileNotFoundError(f"Vocabulary file not found: {path}")


def _config_from_header(
    k: Any, depth: Any, scoring: Any, weighting: Any, descriptor_bytes: Any
) -> VocabularyConfig:
    try:
        config = VocabularyConfig(
            branching_factor=int(k),
            depth=int(depth),
            scoring=parse_enum(ScoringType, scoring),
            weighting=parse_enum(WeightingType, weighting),
            descriptor_bytes=int(descriptor_bytes),
        )
        config.validate()
    except (InvalidConfiguration, TypeError, ValueError) as e:
        raise MalformedPersistedData(f"Invalid vocabulary header: {e}") from e
    return config


def save_vocabulary(vocabulary: VocabularyTree, path: str | Path) -> None:
    """Save a vocabulary in the format selected by the suffix of ``path``.

    Raises:
        InvalidConfiguration: If the suffix names no known format
    """
    path = Path(path)
    fmt = file_format(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    if fmt in TEXT_SUFFIXES:
        save_text(vocabulary, path)
    elif fmt in BINARY_SUFFIXES:
        save_binary(vocabulary, path)
    elif fmt in YAML_SUFFIXES:
        with _open(path, "w") as f:
            yaml.safe_dump({"vocabulary": vocabulary_to_dict(vocabulary)}, f, sort_keys=False)
    else:
        raise InvalidConfiguration(
            f"Unknown vocabulary format {path.name!r} (use .txt, .npz, .yml or .yaml)"
        )
    logger.info(f"Saved vocabulary ({vocabulary.n_words} words) to {path}")


def load_vocabulary(path: str | Path) -> VocabularyTree:
    """Load a vocabulary in the format selected by the suffix of ``path``.

    Raises:
        FileNotFoundError: If the file doesn't exist
        MalformedPersistedData: If the file is corrupt or truncated
        InvalidConfiguration: If the suffix names no known format
    """
    path = Path(path)
    fmt = file_format(path)

    if fmt in TEXT_SUFFIXES:
        vocabulary = load_text(path)
    elif fmt in BINARY_SUFFIXES:
        vocabulary = load_binary(path)
    elif fmt in YAML_SUFFIXES:
        _check_exists(path)
        data = _load_yaml(path)
        if not isinstance(data, dict) or "vocabulary" not in data:
            raise MalformedPersistedData(f"No vocabulary section in {path}")
        vocabulary = vocabulary_from_dict(data["vocabulary"])
    else:
        raise InvalidConfiguration(
            f"Unknown vocabulary format {path.name!r} (use .txt, .npz, .yml or .yaml)"
        )
    logger.info(f"Loaded vocabulary ({vocabulary.n_words} words) from {path}")
    return vocabulary


# ----------------------------------------------------------------------
# Text


def save_text(vocabulary: VocabularyTree, path: str | Path) -> None:
    _, _, weights = vocabulary.to_arrays()
    config = vocabulary.config
    with _open(Path(path), "w") as f:
        f.write(
            f"{config.branching_factor} {config.depth} {int(config.scoring)} "
            f"{int(config.weighting)} {config.descriptor_bytes}\n"
        )
        for node in vocabulary.nodes:
            f.write(
                f"{node.id} {node.parent} {int(node.is_leaf)} "
                f"{to_string(node.descriptor)} {float(weights[node.id])!r}\n"
            )


def load_text(path: str | Path) -> VocabularyTree:
    """Load a text vocabulary (current or legacy DBoW2 layout).

    Raises:
        FileNotFoundError: If the file doesn't exist
        MalformedPersistedData: If a line can't be parsed or the tree is invalid
    """
    path = Path(path)
    _check_exists(path)

    try:
        with _open(path, "r") as f:
            lines = [line for line in f.read().splitlines() if line.strip()]
    except (OSError, EOFError, UnicodeDecodeError) as e:
        raise MalformedPersistedData(f"Cannot read {path}: {e}") from e

    if not lines:
        raise MalformedPersistedData(f"Empty vocabulary file: {path}")

    header = lines[0].split()
    if len(header) == 5:
        legacy = False
    elif len(header) == 4:
        legacy = True
        header.append("32")
    else:
        raise MalformedPersistedData(f"Invalid vocabulary header in {path}: {lines[0]!r}")
    try:
        values = [int(token) for token in header]
    except ValueError as e:
        raise MalformedPersistedData(f"Invalid vocabulary header in {path}: {e}") from e
    config = _config_from_header(*values)
    length = config.descriptor_bytes

    node_lines = lines[1:]
    n = len(node_lines) + (1 if legacy else 0)
    parents = np.full(n, -1, dtype=np.int64)
    descriptors = np.zeros((n, length), dtype=np.uint8)
    weights = np.zeros(n, dtype=np.float64)
    leaf_flags = np.zeros(n, dtype=bool)

    first_id = 1 if legacy else 0
    for offset, line in enumerate(node_lines):
        node_id = first_id + offset
        tokens = line.split()
        expected = length + (3 if legacy else 4)
        if len(tokens) != expected:
            raise MalformedPersistedData(
                f"Line {offset + 2} of {path} has {len(tokens)} fields, expected {expected}"
            )
        if not legacy:
            if tokens[0] != str(node_id):
                raise MalformedPersistedData(
                    f"Line {offset + 2} of {path} holds node {tokens[0]}, expected {node_id}"
                )
            tokens = tokens[1:]
        try:
            parents[node_id] = int(tokens[0])
            leaf_flags[node_id] = bool(int(tokens[1]))
            weights[node_id] = float(tokens[-1])
        except ValueError as e:
            raise MalformedPersistedData(f"Line {offset + 2} of {path}: {e}") from e
        descriptors[node_id] = from_string(" ".join(tokens[2:-1]), length)

    vocabulary = VocabularyTree.from_arrays(config, parents, descriptors, weights)
    _check_leaf_flags(vocabulary, leaf_flags, skip_root=legacy)
    return vocabulary


def _check_leaf_flags(
    vocabulary: VocabularyTree, leaf_flags: np.ndarray, skip_root: bool
) -> None:
    for node in vocabulary.nodes:
        if skip_root and node.id == 0:
            continue
        if node.is_leaf != bool(leaf_flags[node.id]):
            raise MalformedPersistedData(
                f"Node {node.id} leaf flag disagrees with the tree topology"
            )


# ----------------------------------------------------------------------
# Binary


def save_binary(vocabulary: VocabularyTree, path: str | Path) -> None:
    parents, descriptors, weights = vocabulary.to_arrays()
    config = vocabulary.config
    np.savez_compressed(
        path,
        branching_factor=config.branching_factor,
        depth=config.depth,
        scoring=int(config.scoring),
        weighting=int(config.weighting),
        descriptor_bytes=config.descriptor_bytes,
        parents=parents,
        descriptors=descriptors,
        weights=weights,
    )


def load_binary(path: str | Path) -> VocabularyTree:
    path = Path(path)
    _check_exists(path)
    try:
        with np.load(path) as data:
            config = _config_from_header(
                data["branching_factor"],
                data["depth"],
                int(data["scoring"]),
                int(data["weighting"]),
                data["descriptor_bytes"],
            )
            parents = data["parents"]
            descriptors = data["descriptors"]
            weights = data["weights"]
    except (KeyError, OSError, EOFError, ValueError, zipfile.BadZipFile) as e:
        if isinstance(e, MalformedPersistedData):
            raise
        raise MalformedPersistedData(f"Cannot read vocabulary from {path}: {e}") from e

    if descriptors.dtype != np.uint8:
        raise MalformedPersistedData(f"Descriptors in {path} are not uint8")
    return VocabularyTree.from_arrays(config, parents, descriptors, weights)


# ----------------------------------------------------------------------
# YAML


def _load_yaml(path: Path) -> Any:
    try:
        with _open(path, "r") as f:
            return yaml.safe_load(f)
    except (yaml.YAMLError, OSError, EOFError, UnicodeDecodeError) as e:
        raise MalformedPersistedData(f"Cannot parse {path}: {e}") from e


def vocabulary_to_dict(vocabulary: VocabularyTree) -> dict[str, Any]:
    """Plain-data representation of a vocabulary for YAML documents."""
    config = vocabulary.config
    return {
        "branching_factor": config.branching_factor,
        "depth": config.depth,
        "weighting": config.weighting.name,
        "scoring": config.scoring.name,
        "descriptor_bytes": config.descriptor_bytes,
        "nodes": [
            {
                "id": node.id,
                "parent": node.parent,
                "descriptor": to_string(node.descriptor),
                "weight": float(node.weight) if node.is_leaf else 0.0,
            }
            for node in vocabulary.nodes
        ],
    }


def vocabulary_from_dict(data: Any) -> VocabularyTree:
    """Inverse of :func:`vocabulary_to_dict`.

    Raises:
        MalformedPersistedData: If fields are missing or invalid
    """
    if not isinstance(data, dict):
        raise MalformedPersistedData("Vocabulary entry must be a mapping")
    try:
        config = _config_from_header(
            data["branching_factor"],
            data["depth"],
            data["scoring"],
            data["weighting"],
            data["descriptor_bytes"],
        )
        nodes = data["nodes"]
        for index, node in enumerate(nodes):
            if int(node["id"]) != index:
                raise MalformedPersistedData(f"Node {node['id']} stored at position {index}")
        parents = np.array([int(node["parent"]) for node in nodes], dtype=np.int64)
        descriptors = np.array(
            [from_string(str(node["descriptor"]), config.descriptor_bytes) for node in nodes],
            dtype=np.uint8,
        ).reshape(len(nodes), config.descriptor_bytes)
        weights = np.array([float(node["weight"]) for node in nodes], dtype=np.float64)
    except (KeyError, TypeError, ValueError) as e:
        if isinstance(e, MalformedPersistedData):
            raise
        raise MalformedPersistedData(f"Invalid vocabulary entry: {e}") from e

    return VocabularyTree.from_arrays(config, parents, descriptors, weights)
