"""
Matching Module for Face Login

Compares a probe embedding against an enrolled embedding.

Components:
    - interfaces: MatchResult and the EmbeddingMatcher base class
    - euclidean_matcher: raw Euclidean distance with a configurable threshold

Usage:
    from core.matching import EuclideanMatcher
    matcher = EuclideanMatcher({"threshold": 0.6})
    distance, matched = matcher.is_match(probe, enrolled)
"""

from core.matching.interfaces import (
    MatchResult,
    EmbeddingMatcher,
)
from core.matching.euclidean_matcher import (
    DEFAULT_THRESHOLD,
    EuclideanMatcher,
    euclidean_distance,
)

__all__ = [
    "MatchResult",
    "EmbeddingMatcher",
    "DEFAULT_THRESHOLD",
    "EuclideanMatcher",
    "euclidean_distance",
]
