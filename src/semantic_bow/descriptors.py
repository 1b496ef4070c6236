"""Binary descriptor primitives.

A descriptor is a ``uint8`` array of L bytes (L * 8 bits, 32 bytes for ORB).
A set of descriptors is an (N, L) ``uint8`` matrix. All functions here are
pure: they never modify their inputs.

Semantic features add a class id and an instance id per descriptor; both
use -1 for "not available".
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np

from .errors import DimensionMismatch, MalformedPersistedData

UNLABELED = -1


def _word_view(x: np.ndarray) -> np.ndarray:
    """View the last axis as 64-bit words when the byte count allows it."""
    if x.shape[-1] % 8 == 0 and x.flags.c_contiguous:
        return x.view(np.uint64)
    return x


def distance(a: np.ndarray, b: np.ndarray) -> int:
    """Hamming distance between two descriptors.

    Args:
        a: Descriptor, shape (L,) uint8
        b: Descriptor, shape (L,) uint8

    Returns:
        Number of differing bits

    Raises:
        DimensionMismatch: If the descriptors have different lengths
    """
    a = np.ascontiguousarray(a, dtype=np.uint8).ravel()
    b = np.ascontiguousarray(b, dtype=np.uint8).ravel()
    if a.shape != b.shape:
        raise DimensionMismatch(
            f"Descriptor lengths differ: {a.shape[0]} vs {b.shape[0]} bytes"
        )
    return int(np.bitwise_count(_word_view(a) ^ _word_view(b)).sum())


def distance_matrix(descriptors: np.ndarray, centers: np.ndarray) -> np.ndarray:
    """Pairwise Hamming distances.

    Args:
        descriptors: Shape (N, L) uint8
        centers: Shape (K, L) uint8

    Returns:
        Distances, shape (N, K) int64
    """
    descriptors = np.ascontiguousarray(descriptors, dtype=np.uint8)
    centers = np.ascontiguousarray(centers, dtype=np.uint8)
    if descriptors.shape[1] != centers.shape[1]:
        raise DimensionMismatch(
            f"Descriptor lengths differ: {descriptors.shape[1]} vs "
            f"{centers.shape[1]} bytes"
        )

    xor = _word_view(descriptors)[:, np.newaxis, :] ^ _word_view(centers)[np.newaxis]
    return np.bitwise_count(xor).sum(axis=2, dtype=np.int64)


def mean_value(descriptors: np.ndarray | Sequence[np.ndarray]) -> np.ndarray | None:
    """Majority-vote centroid of a set of descriptors.

    A bit is set in the result iff it is set in at least ceil(N / 2) inputs,
    so a tie sets the bit.

    Args:
        descriptors: Shape (N, L) uint8, or a sequence of (L,) descriptors

    Returns:
        Centroid, shape (L,) uint8, or None when there are no inputs
    """
    if len(descriptors) == 0:
        return None
    if len(descriptors) == 1:
        return np.array(descriptors[0], dtype=np.uint8).ravel()

    matrix = as_descriptor_matrix(descriptors)
    n = matrix.shape[0]
    counts = np.unpackbits(matrix, axis=1).sum(axis=0)
    threshold = n // 2 + n % 2
    return np.packbits(counts >= threshold)


def to_string(descriptor: np.ndarray) -> str:
    """Serialize a descriptor as whitespace-separated byte values."""
    return " ".join(str(int(b)) for b in np.asarray(descriptor, dtype=np.uint8).ravel())


def from_string(text: str, length: int) -> np.ndarray:
    """Parse a descriptor written by :func:`to_string`.

    Args:
        text: Whitespace-separated byte values
        length: Expected number of bytes

    Returns:
        Descriptor, shape (length,) uint8

    Raises:
        MalformedPersistedData: On a wrong token count or an invalid byte value
    """
    tokens = text.split()
    if len(tokens) != length:
        raise MalformedPersistedData(
            f"Expected {length} byte values, got {len(tokens)}"
        )
    try:
        values = [int(t) for t in tokens]
    except ValueError as e:
        raise MalformedPersistedData(f"Non-integer byte value in descriptor: {e}") from e
    if any(v < 0 or v > 255 for v in values):
        raise MalformedPersistedData(f"Byte value out of range in {text!r}")
    return np.array(values, dtype=np.uint8)


def to_float_matrix(descriptors: np.ndarray | Sequence[np.ndarray]) -> np.ndarray:
    """Expand descriptors into one 0.0/1.0 float per bit, MSB first.

    Args:
        descriptors: Shape (N, L) uint8

    Returns:
        Bit matrix, shape (N, L * 8) float32
    """
    matrix = as_descriptor_matrix(descriptors)
    return np.unpackbits(matrix, axis=1).astype(np.float32)


def as_descriptor_matrix(
    descriptors: np.ndarray | Sequence[np.ndarray], length: int | None = None
) -> np.ndarray:
    """Return descriptors as a contiguous (N, L) uint8 matrix.

    Args:
        descriptors: Matrix or sequence of descriptors
        length: Expected descriptor length in bytes (not checked when None)

    Raises:
        DimensionMismatch: If the layout is not (N, length)
    """
    if isinstance(descriptors, np.ndarray):
        matrix = descriptors
    elif len(descriptors) == 0:
        matrix = np.empty((0, length or 0), dtype=np.uint8)
    else:
        rows = [np.asarray(d).ravel() for d in descriptors]
        if len({r.shape[0] for r in rows}) != 1:
            raise DimensionMismatch("Descriptors in a set must all have the same length")
        matrix = np.stack(rows)

    if matrix.ndim == 1 and matrix.size == 0:
        matrix = matrix.reshape(0, length or 0)
    if matrix.ndim != 2:
        raise DimensionMismatch(f"Descriptors must be (N, L), got shape {matrix.shape}")
    if matrix.dtype != np.uint8:
        if not np.issubdtype(matrix.dtype, np.integer):
            raise DimensionMismatch(f"Descriptors must be uint8, got {matrix.dtype}")
        matrix = matrix.astype(np.uint8)
    if length is not None and matrix.shape[0] > 0 and matrix.shape[1] != length:
        raise DimensionMismatch(
            f"Descriptors must be {length} bytes, got {matrix.shape[1]}"
        )
    return np.ascontiguousarray(matrix)


@dataclass
class FeatureSet:
    """Descriptors of one image with their semantic labels.

    Attributes:
        descriptors: Binary descriptors, shape (N, L) uint8
        class_ids: Semantic class per descriptor, shape (N,), -1 = unlabeled
        instance_ids: Object instance per descriptor, shape (N,), -1 = none
    """

    descriptors: np.ndarray  # (N, L) uint8
    class_ids: np.ndarray  # (N,) int64
    instance_ids: np.ndarray  # (N,) int64

    def __len__(self) -> int:
        return int(self.descriptors.shape[0])

    @property
    def is_labeled(self) -> bool:
        """Whether any descriptor carries a semantic class."""
        return bool(np.any(self.class_ids != UNLABELED))

    @classmethod
    def from_arrays(
        cls,
        descriptors: np.ndarray | Sequence[np.ndarray],
        class_ids: Sequence[int] | np.ndarray | None = None,
        instance_ids: Sequence[int] | np.ndarray | None = None,
        length: int | None = None,
    ) -> FeatureSet:
        """Build a feature set, filling missing labels with -1.

        Raises:
            DimensionMismatch: If label arrays don't match the descriptor count
        """
        matrix = as_descriptor_matrix(descriptors, length)
        n = matrix.shape[0]
        return cls(
            descriptors=matrix,
            class_ids=_label_array(class_ids, n, "class_ids"),
            instance_ids=_label_array(instance_ids, n, "instance_ids"),
        )


def _label_array(values: Sequence[int] | np.ndarray | None, n: int, name: str) -> np.ndarray:
    if values is None:
        return np.full(n, UNLABELED, dtype=np.int64)
    array = np.asarray(values, dtype=np.int64).ravel()
    if array.shape[0] != n:
        raise DimensionMismatch(f"{name} has {array.shape[0]} entries for {n} descriptors")
    return array
