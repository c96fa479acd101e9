"""
Error taxonomy for the face login core.

Components below the orchestrator (embedding validation, matcher, descriptor
store, credential issuer) raise these exceptions and never swallow them. The
Auth Orchestrator is the only layer that translates them into the public
vocabulary (UnknownAccount, NoMatch, BadRequest, InternalError).

    FaceAuthError
    ├── InvalidEmbeddingError          input error
    │   └── DimensionMismatchError     input error / programming error in the matcher
    ├── AccountNotFoundError           lookup error
    ├── StoreConflictError             collaborator failure (retryable)
    ├── StoreUnavailableError          collaborator failure (retryable)
    ├── CredentialIssuerError          collaborator failure (retryable)
    ├── InvalidCredentialError         credential unknown, expired or already used
    └── SessionNotFoundError           unknown or abandoned session id
"""

from typing import Optional


class FaceAuthError(Exception):
    """Base class for all face login errors."""


class InvalidEmbeddingError(FaceAuthError, ValueError):
    """An embedding is empty, non-numeric or contains non-finite values."""


class DimensionMismatchError(InvalidEmbeddingError):
    """Two embeddings (or an embedding and the configured size) differ in length."""

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Embedding dimension mismatch: expected {expected}, got {actual}"
        )


class AccountNotFoundError(FaceAuthError, KeyError):
    """No identity record is enrolled for the account."""

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(account_id)

    def __str__(self) -> str:
        return f"No enrolled embedding for account {self.account_id!r}"


class StoreConflictError(FaceAuthError):
    """Another writer holds the account's write lock."""

    retryable = True


class StoreUnavailableError(FaceAuthError):
    """The backing database could not be read or written."""

    retryable = True


class CredentialIssuerError(FaceAuthError):
    """The credential issuer failed to mint a token."""

    retryable = True


class InvalidCredentialError(FaceAuthError):
    """A credential is unknown, expired or was already redeemed."""


class SessionNotFoundError(FaceAuthError, KeyError):
    """No live session exists with the given id."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(session_id)

    def __str__(self) -> str:
        return f"Session {self.session_id!r} not found"


def is_retryable(error: Optional[BaseException]) -> bool:
    """Return True for collaborator failures a caller may retry."""
    return bool(getattr(error, "retryable", False))
