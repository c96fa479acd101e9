"""
Euclidean Matcher: compare face embeddings by raw Euclidean distance.

distance = sqrt(sum((probe[i] - enrolled[i]) ** 2))
matched  = distance < threshold

No normalization and no per-dimension weighting is applied: the raw distance in
embedding space is the entire similarity metric. The default threshold of 0.6 is
the usual operating point for 128-d dlib / face-api descriptors and can be tuned
through matching.threshold in config.yaml.

Known limitation: this is a pure vector comparison. No liveness or
anti-spoofing check is performed, so a replayed or synthesized vector is
indistinguishable from a live capture at this layer.
"""

import math
from typing import Any, Dict, Optional

import numpy as np

from core.errors import DimensionMismatchError
from core.matching.interfaces import EmbeddingMatcher

DEFAULT_THRESHOLD = 0.6


def euclidean_distance(a: np.ndarray, b: np.ndarray) -> float:
    """
    Euclidean distance between two equal-length vectors.

    Raises:
        DimensionMismatchError: If the vectors differ in length. Checked before
            any arithmetic so no partial distance is ever produced.
    """
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)

    if a.shape != b.shape:
        raise DimensionMismatchError(expected=b.size, actual=a.size)

    diff = a - b
    return math.sqrt(float(np.dot(diff, diff)))


class EuclideanMatcher(EmbeddingMatcher):
    """
    Threshold decision on raw Euclidean distance.

    Args:
        config: Dictionary with optional keys:
            - threshold: Maximum distance still considered a match (default 0.6)
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        if config is None:
            config = {}
        super().__init__(config.get("threshold", DEFAULT_THRESHOLD))

    def distance(self, probe: np.ndarray, enrolled: np.ndarray) -> float:
        return euclidean_distance(probe, enrolled)

    @property
    def method_name(self) -> str:
        return "euclidean"
