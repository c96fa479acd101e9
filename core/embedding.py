"""
Embedding value type.

An embedding is an ordered, fixed-length vector of floats produced by the
embedding oracle. It has no identity of its own and is only meaningful relative
to another embedding via distance. Embeddings are represented as read-only
float64 numpy arrays so that a stored or probe vector cannot be mutated after it
has been validated.
"""

from typing import Optional, Sequence, Union

import numpy as np

from core.errors import DimensionMismatchError, InvalidEmbeddingError

EmbeddingLike = Union[np.ndarray, Sequence[float]]


def to_embedding(values: EmbeddingLike, expected_dim: Optional[int] = None) -> np.ndarray:
    """
    Validate and freeze an embedding.

    Args:
        values: Sequence of numbers (list from JSON, numpy array from the oracle).
        expected_dim: If given, the vector must have exactly this length.

    Returns:
        Read-only float64 array of shape (D,).

    Raises:
        InvalidEmbeddingError: If the vector is empty, not one-dimensional,
            non-numeric or contains NaN/inf.
        DimensionMismatchError: If expected_dim is given and does not match.
    """
    if values is None:
        raise InvalidEmbeddingError("Embedding is missing")
    if isinstance(values, (str, bytes)):
        raise InvalidEmbeddingError("Embedding must be a sequence of numbers")

    if isinstance(values, np.ndarray):
        if values.dtype == np.bool_:
            raise InvalidEmbeddingError("Embedding must be a sequence of numbers")
    elif isinstance(values, (list, tuple)) and any(
        isinstance(v, (bool, np.bool_, str, bytes)) for v in values
    ):
        # np.array would coerce True -> 1.0 and "1" -> 1.0
        raise InvalidEmbeddingError("Embedding must be a sequence of numbers")

    try:
        array = np.array(values, dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise InvalidEmbeddingError(f"Embedding must be a sequence of numbers: {e}") from e

    if array.ndim != 1:
        raise InvalidEmbeddingError(
            f"Embedding must be one-dimensional, got shape {array.shape}"
        )
    if array.size == 0:
        raise InvalidEmbeddingError("Embedding is empty")
    if not np.all(np.isfinite(array)):
        raise InvalidEmbeddingError("Embedding contains NaN or infinite values")
    if expected_dim is not None and array.shape[0] != expected_dim:
        raise DimensionMismatchError(expected_dim, array.shape[0])

    array.setflags(write=False)
    return array


def embedding_to_list(embedding: np.ndarray) -> list:
    """Convert an embedding to a JSON-serializable list of floats."""
    return [float(v) for v in embedding]
