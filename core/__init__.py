"""
Core Module for the Face Login Service

This package contains the descriptor-based enrollment/verification protocol.

Main components:
    - config: Configuration loading and management
    - embedding: Embedding validation (immutable float vectors)
    - embedding_oracle: Frame -> embedding collaborator and sample producer
    - descriptor_store: One enrolled embedding per account (SQLite)
    - matching: Euclidean distance matcher with configurable threshold
    - credential_issuer: Single-use login tokens
    - auth_orchestrator: Enrollment / verification state machine
    - errors: Internal error taxonomy

Usage:
    from core.auth_orchestrator import get_orchestrator
    outcome = get_orchestrator().verify("alice@example.com", embedding)
"""

from core.config import (
    get_config,
    get_section,
    get_matching_config,
    get_enrollment_config,
    get_verification_config,
    get_storage_config,
    get_credentials_config,
    get_embedding_oracle_config,
    get_api_config,
    get_server_config,
)

from core.embedding import to_embedding

from core.embedding_oracle import (
    EmbeddingOracle,
    FaceEmbeddingOracle,
    InitOnce,
    decode_frame,
    iter_samples,
    get_embedding_oracle,
)

from core.descriptor_store import DescriptorStore, get_descriptor_store

from core.matching import EuclideanMatcher, MatchResult, euclidean_distance

from core.credential_issuer import (
    Credential,
    CredentialIssuer,
    MagicLinkIssuer,
    get_credential_issuer,
)

from core.auth_orchestrator import (
    AuthError,
    AuthOrchestrator,
    AuthSession,
    FailureReason,
    SampleBudget,
    SampleOutcome,
    SessionKind,
    SessionState,
    get_orchestrator,
)

__all__ = [
    # Configuration
    "get_config",
    "get_section",
    "get_matching_config",
    "get_enrollment_config",
    "get_verification_config",
    "get_storage_config",
    "get_credentials_config",
    "get_embedding_oracle_config",
    "get_api_config",
    "get_server_config",
    # Embeddings
    "to_embedding",
    "EmbeddingOracle",
    "FaceEmbeddingOracle",
    "InitOnce",
    "decode_frame",
    "iter_samples",
    "get_embedding_oracle",
    # Descriptor Store
    "DescriptorStore",
    "get_descriptor_store",
    # Matching
    "EuclideanMatcher",
    "MatchResult",
    "euclidean_distance",
    # Credentials
    "Credential",
    "CredentialIssuer",
    "MagicLinkIssuer",
    "get_credential_issuer",
    # Orchestrator
    "AuthError",
    "AuthOrchestrator",
    "AuthSession",
    "FailureReason",
    "SampleBudget",
    "SampleOutcome",
    "SessionKind",
    "SessionState",
    "get_orchestrator",
]
