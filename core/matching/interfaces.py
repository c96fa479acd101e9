"""
Matching Interfaces Module

This module defines the abstract interface for comparing face embeddings.

A matcher takes a probe embedding (freshly captured) and an enrolled embedding
(read from the descriptor store), computes a distance between them and applies
a decision threshold. Lower distance means more similar faces.

Usage:
    from core.matching.interfaces import MatchResult, EmbeddingMatcher

    class MyMatcher(EmbeddingMatcher):
        def distance(self, probe, enrolled):
            ...
"""

import math

import numpy as np
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple


@dataclass
class MatchResult:
    """
    Result of a matching operation.

    Attributes:
        distance: Distance between probe and enrolled embeddings.
                  0.0 = identical vectors.
        is_match: True if distance is strictly below the threshold.
        threshold: Threshold the decision was made against.
        details: Algorithm-specific details for logging and debugging.
                 Never contains the embeddings themselves.
    """

    distance: float
    is_match: bool
    threshold: float
    details: Dict[str, Any] = field(default_factory=dict)


class EmbeddingMatcher(ABC):
    """
    Abstract base class for embedding comparison.

    Subclasses implement distance(); the threshold decision is shared so that
    every matcher applies the same strict "distance < threshold" rule.
    """

    def __init__(self, threshold: float):
        try:
            value = float(threshold)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Match threshold must be a number, got {threshold!r}") from e
        if not value > 0 or math.isinf(value):
            raise ValueError(f"Match threshold must be positive, got {threshold}")
        self.threshold = value

    @abstractmethod
    def distance(self, probe: np.ndarray, enrolled: np.ndarray) -> float:
        """
        Compute the distance between two embeddings.

        Args:
            probe: Embedding from the verification capture, shape (D,).
            enrolled: Embedding from the identity record, shape (D,).

        Returns:
            Non-negative distance.

        Raises:
            DimensionMismatchError: If the embeddings differ in length.
        """
        pass

    def is_match(
        self,
        probe: np.ndarray,
        enrolled: np.ndarray,
        threshold: Optional[float] = None,
    ) -> Tuple[float, bool]:
        """
        Compare two embeddings and apply the threshold.

        Args:
            probe: Probe embedding.
            enrolled: Enrolled embedding.
            threshold: Per-call override of the matcher's threshold.

        Returns:
            Tuple of (distance, matched).
        """
        limit = self.threshold if threshold is None else float(threshold)
        dist = self.distance(probe, enrolled)
        return dist, dist < limit

    def compare(self, probe: np.ndarray, enrolled: np.ndarray) -> MatchResult:
        """Compare two embeddings and return a full MatchResult."""
        dist, matched = self.is_match(probe, enrolled)
        return MatchResult(
            distance=dist,
            is_match=matched,
            threshold=self.threshold,
            details={
                "method": self.method_name,
                "embedding_dim": int(np.shape(probe)[0]),
            },
        )

    @property
    def method_name(self) -> str:
        """Short name reported in MatchResult.details."""
        return type(self).__name__
