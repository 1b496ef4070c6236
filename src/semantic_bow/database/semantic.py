"""Semantic labels for filtering database queries.

Every descriptor may carry a semantic class id (-1 = unlabeled). For each
image and word the database keeps the word's dominant label: the most
frequent class among the image's descriptors that fell into the word.

A LabelTable maps class ids to a weight in [0, 1]. When a query word meets
a stored entry of the same word, their labels agree with:
- 0.0 when both are labeled and differ
- the label's table weight when they are equal
- the other side's weight when one side is unlabeled (1.0 if both are)

Setting a class weight to 0 therefore removes that class (e.g. moving
objects) from matching.

Label files are JSON or YAML mappings from class id to a name or to
``{"name": ..., "weight": ...}``, optionally nested under ``labels``::

    {"0": "road", "11": {"name": "person", "weight": 0.0}}
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import numpy as np
import yaml

from ..config import SemanticFilterMode
from ..descriptors import UNLABELED
from ..errors import InvalidConfiguration, MalformedPersistedData

__all__ = [
    "LabelInfo",
    "LabelTable",
    "SemanticFilterMode",
    "agreement",
    "dominant_labels",
]


@dataclass
class LabelInfo:
    """Description of one semantic class."""

    name: str
    weight: float = 1.0


class LabelTable:
    """Lookup from semantic class id to filter weight."""

    def __init__(self, labels: dict[int, LabelInfo] | None = None) -> None:
        self._labels: dict[int, LabelInfo] = dict(labels or {})
        for class_id, info in self._labels.items():
            if not 0.0 <= info.weight <= 1.0:
                raise InvalidConfiguration(
                    f"Weight of class {class_id} must be in [0, 1], got {info.weight}"
                )

    def __len__(self) -> int:
        return len(self._labels)

    def __contains__(self, class_id: int) -> bool:
        return class_id in self._labels

    def name(self, class_id: int) -> str | None:
        info = self._labels.get(class_id)
        return info.name if info is not None else None

    def weight(self, class_id: int) -> float:
        """Filter weight of a class; unknown and unlabeled ids weigh 1.0."""
        info = self._labels.get(int(class_id))
        return info.weight if info is not None else 1.0

    def weights(self, class_ids: np.ndarray) -> np.ndarray:
        """Vectorized :meth:`weight`."""
        class_ids = np.asarray(class_ids, dtype=np.int64)
        result = np.ones(class_ids.shape, dtype=np.float64)
        for class_id, info in self._labels.items():
            result[class_ids == class_id] = info.weight
        return result

    def to_dict(self) -> dict[int, dict[str, Any]]:
        return {
            class_id: {"name": info.name, "weight": float(info.weight)}
            for class_id, info in sorted(self._labels.items())
        }

    @classmethod
    def from_dict(cls, data: Any) -> LabelTable:
        """Build a table from a parsed label file.

        Raises:
            InvalidConfiguration: If an entry is malformed
        """
        if isinstance(data, dict) and set(data) == {"labels"}:
            data = data["labels"]
        if not isinstance(data, dict):
            raise InvalidConfiguration("Label table must map class ids to labels")

        labels = {}
        for key, value in data.items():
            try:
                class_id = int(key)
            except (TypeError, ValueError) as e:
                raise InvalidConfiguration(f"Invalid class id {key!r}") from e
            if isinstance(value, str):
                labels[class_id] = LabelInfo(name=value)
            elif isinstance(value, dict) and "name" in value:
                try:
                    weight = float(value.get("weight", 1.0))
                except (TypeError, ValueError) as e:
                    raise InvalidConfiguration(f"Invalid weight for class {class_id}") from e
                labels[class_id] = LabelInfo(name=str(value["name"]), weight=weight)
            else:
                raise InvalidConfiguration(f"Invalid label entry for class {class_id}")
        return cls(labels)

    @classmethod
    def load(cls, path: str | Path) -> LabelTable:
        """Load a JSON (``.json``) or YAML label file.

        Raises:
            FileNotFoundError: If the file doesn't exist
            MalformedPersistedData: If the file can't be parsed
            InvalidConfiguration: If an entry is malformed
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Label file not found: {path}")

        with open(path, "r", encoding="utf-8") as f:
            try:
                if path.suffix.lower() == ".json":
                    data = json.load(f)
                else:
                    data = yaml.safe_load(f)
            except (json.JSONDecodeError, yaml.YAMLError) as e:
                raise MalformedPersistedData(f"Cannot parse label file {path}: {e}") from e

        return cls.from_dict(data)


def dominant_labels(word_ids: np.ndarray, class_ids: np.ndarray) -> dict[int, int]:
    """Most frequent label per word; ties go to the lowest class id.

    Unlabeled descriptors are ignored; a word with no labeled descriptor
    gets -1.

    Args:
        word_ids: Word per descriptor, shape (N,)
        class_ids: Class per descriptor, shape (N,)

    Returns:
        Mapping word id -> dominant class id
    """
    word_ids = np.asarray(word_ids, dtype=np.int64)
    class_ids = np.asarray(class_ids, dtype=np.int64)
    result = {int(w): UNLABELED for w in np.unique(word_ids).tolist()}

    labeled = class_ids != UNLABELED
    if not labeled.any():
        return result

    pairs, counts = np.unique(
        np.stack([word_ids[labeled], class_ids[labeled]], axis=1),
        axis=0,
        return_counts=True,
    )
    best_counts: dict[int, int] = {}
    # pairs are sorted by word then class, so a strict > keeps the lowest class
    for (word_id, class_id), count in zip(pairs.tolist(), counts.tolist()):
        if count > best_counts.get(word_id, 0):
            best_counts[word_id] = count
            result[word_id] = class_id
    return result


def agreement(query_label: int, entry_labels: np.ndarray, table: LabelTable) -> np.ndarray:
    """Agreement between a query word's label and stored entries' labels.

    Args:
        query_label: Dominant label of the word in the query
        entry_labels: Dominant labels of the word in stored images, shape (M,)
        table: Class weights

    Returns:
        Agreement per entry in [0, 1], shape (M,)
    """
    entry_labels = np.asarray(entry_labels, dtype=np.int64)
    result = np.where(
        entry_labels == UNLABELED, table.weight(query_label), table.weights(entry_labels)
    )
    if query_label != UNLABELED:
        conflict = (entry_labels != UNLABELED) & (entry_labels != query_label)
        result = np.where(conflict, 0.0, result)
    return result.astype(np.float64)
