"""
Auth Orchestrator

Protocol state machine for face enrollment and verification. It coordinates
embedding samples coming from the client, the descriptor store, the matcher
and the credential issuer, and is the only layer that turns internal errors
into the public failure vocabulary:

    UnknownAccount | NoMatch | BadRequest | InternalError

States:

    enrollment    Idle -> AwaitingEnrollmentEmbedding -> Enrolled
    verification  Idle -> AwaitingVerificationEmbedding -> Verified | Rejected

Enrollment accepts the first valid embedding of a session and ignores later
ones. Verification matches every submitted sample, in order, against the
embedding read when the session began; the first match wins and yields a
single-use credential. Non-matching samples keep the session open until its
attempt/time budget runs out, at which point it is Rejected with NoMatch.

A session owns no external resources (no transaction spans samples), so a
caller may abandon it at any point.

Information disclosure: verifying a non-enrolled account is reported as
UnknownAccount immediately, without running the matcher. Account existence is
therefore visible to callers of the verification step. This is intentional and
limited to that one explicit signal.

Usage:
    orchestrator = get_orchestrator()

    session = orchestrator.begin_verification("alice@example.com")
    outcome = orchestrator.submit_sample(session.session_id, embedding)
    if outcome.state is SessionState.VERIFIED:
        token = outcome.credential.token
"""

import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional

import numpy as np

from core.credential_issuer import Credential, CredentialIssuer
from core.descriptor_store import DescriptorStore
from core.embedding import EmbeddingLike, to_embedding
from core.errors import (
    AccountNotFoundError,
    CredentialIssuerError,
    DimensionMismatchError,
    InvalidEmbeddingError,
    SessionNotFoundError,
    StoreConflictError,
    StoreUnavailableError,
)
from core.matching.interfaces import EmbeddingMatcher

logger = logging.getLogger(__name__)

# Finished sessions stay queryable this long past their deadline
SESSION_RETENTION_SEC = 60.0


class SessionState(str, Enum):
    IDLE = "Idle"
    AWAITING_ENROLLMENT_EMBEDDING = "AwaitingEnrollmentEmbedding"
    ENROLLED = "Enrolled"
    AWAITING_VERIFICATION_EMBEDDING = "AwaitingVerificationEmbedding"
    VERIFIED = "Verified"
    REJECTED = "Rejected"


TERMINAL_STATES = frozenset({SessionState.ENROLLED, SessionState.VERIFIED, SessionState.REJECTED})
AWAITING_STATES = frozenset({
    SessionState.AWAITING_ENROLLMENT_EMBEDDING,
    SessionState.AWAITING_VERIFICATION_EMBEDDING,
})


class SessionKind(str, Enum):
    ENROLLMENT = "enrollment"
    VERIFICATION = "verification"


class FailureReason(str, Enum):
    """Public failure vocabulary."""

    UNKNOWN_ACCOUNT = "UnknownAccount"
    NO_MATCH = "NoMatch"
    BAD_REQUEST = "BadRequest"
    INTERNAL_ERROR = "InternalError"


PUBLIC_MESSAGES = {
    FailureReason.UNKNOWN_ACCOUNT: "User not found",
    FailureReason.NO_MATCH: "Face not recognized",
    FailureReason.BAD_REQUEST: "Malformed request",
    FailureReason.INTERNAL_ERROR: "Authentication service temporarily unavailable, please retry",
}

# Detail codes attached to BadRequest outcomes of enrollment sessions
ENROLLMENT_IN_PROGRESS = "EnrollmentInProgress"
ENROLLMENT_TIMEOUT = "EnrollmentTimeout"


class AuthError(Exception):
    """
    A request failed with one of the public failure reasons.

    Attributes:
        reason: FailureReason.
        message: Stable user-facing message for the reason.
        detail: Extra context safe to return to the caller (never embeddings).
        retryable: True for collaborator failures.
        distance: Last computed distance, when one exists.
    """

    def __init__(
        self,
        reason: FailureReason,
        detail: Optional[str] = None,
        retryable: bool = False,
        distance: Optional[float] = None,
    ):
        self.reason = reason
        self.message = PUBLIC_MESSAGES[reason]
        self.detail = detail
        self.retryable = retryable
        self.distance = distance
        super().__init__(f"{reason.value}: {detail or self.message}")


@dataclass
class SampleBudget:
    """Attempt and wall-clock limits for one session."""

    max_attempts: int
    timeout_sec: float

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "SampleBudget":
        return cls(
            max_attempts=int(config.get("max_attempts", 20)),
            timeout_sec=float(config.get("timeout_sec", 15.0)),
        )


@dataclass
class AuthSession:
    """
    State of one enrollment or verification session.

    The enrolled embedding of a verification session is held in memory only
    and is never exposed to callers.
    """

    session_id: str
    account_id: str
    kind: SessionKind
    state: SessionState
    max_attempts: int
    deadline: float
    attempts: int = 0
    last_distance: Optional[float] = None
    failure: Optional[FailureReason] = None
    detail: Optional[str] = None
    enrolled: Optional[np.ndarray] = field(default=None, repr=False, compare=False)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def is_awaiting(self) -> bool:
        return self.state in AWAITING_STATES

    @property
    def attempts_remaining(self) -> int:
        return max(0, self.max_attempts - self.attempts)


@dataclass
class SampleOutcome:
    """
    Result of submitting one sample to a session.

    Attributes:
        session_id: Session the sample belonged to.
        state: Session state after the sample.
        accepted: True if the sample was used (enrolled or matched against).
        distance: Distance computed for this sample (verification only).
        matched: Whether this sample matched.
        credential: One-time credential, only when state is Verified.
        failure: Public failure reason when the session ended unsuccessfully.
        detail: Extra context for the failure.
        attempts: Samples consumed so far, including ticks without a face.
        attempts_remaining: Samples left in the budget.
        replaced: Enrollment replaced an existing embedding.
    """

    session_id: str
    state: SessionState
    accepted: bool
    distance: Optional[float] = None
    matched: bool = False
    credential: Optional[Credential] = None
    failure: Optional[FailureReason] = None
    detail: Optional[str] = None
    attempts: int = 0
    attempts_remaining: int = 0
    replaced: bool = False


class AuthOrchestrator:
    """
    Drives enrollment and verification sessions.

    Args:
        store: Descriptor store holding one embedding per account.
        matcher: Embedding matcher with the configured threshold.
        issuer: Credential issuer for verified accounts.
        enrollment_budget: Limits for enrollment sessions.
        verification_budget: Limits for verification sessions.
        embedding_dim: Expected embedding length; probes of another length
                       are rejected as BadRequest before any comparison.
        clock: Monotonic time source.
    """

    def __init__(
        self,
        store: DescriptorStore,
        matcher: EmbeddingMatcher,
        issuer: CredentialIssuer,
        enrollment_budget: Optional[SampleBudget] = None,
        verification_budget: Optional[SampleBudget] = None,
        embedding_dim: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.matcher = matcher
        self.issuer = issuer
        self.enrollment_budget = enrollment_budget or SampleBudget(50, 30.0)
        self.verification_budget = verification_budget or SampleBudget(20, 15.0)
        self.embedding_dim = embedding_dim
        self._clock = clock

        self._sessions: Dict[str, AuthSession] = {}
        self._sessions_lock = threading.Lock()

    # ------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------

    def _new_session(
        self,
        account_id: str,
        kind: SessionKind,
        budget: SampleBudget,
        state: SessionState = SessionState.IDLE,
    ) -> AuthSession:
        return AuthSession(
            session_id=secrets.token_hex(16),
            account_id=account_id,
            kind=kind,
            state=state,
            max_attempts=budget.max_attempts,
            deadline=self._clock() + budget.timeout_sec,
        )

    def _prune_sessions(self) -> None:
        """Drop sessions whose deadline passed more than the retention window ago."""
        cutoff = self._clock() - SESSION_RETENTION_SEC
        with self._sessions_lock:
            stale = [sid for sid, s in self._sessions.items() if s.deadline < cutoff]
            for sid in stale:
                del self._sessions[sid]
        if stale:
            logger.debug(f"Pruned {len(stale)} stale sessions")

    def _budget_exhausted(self, session: AuthSession) -> bool:
        return session.attempts >= session.max_attempts or self._clock() >= session.deadline

    def begin_enrollment(self, account_id: str) -> AuthSession:
        """
        Start an enrollment session for an account.

        If another enrollment for the same account is still awaiting its
        embedding, the new session stays Idle with a BadRequest failure
        (detail EnrollmentInProgress) and is not registered.

        Returns:
            The new session.
        """
        self._prune_sessions()

        with self._sessions_lock:
            for other in self._sessions.values():
                if (
                    other.kind is SessionKind.ENROLLMENT
                    and other.account_id == account_id
                    and other.is_awaiting
                    and not self._budget_exhausted(other)
                ):
                    session = self._new_session(account_id, SessionKind.ENROLLMENT, self.enrollment_budget)
                    session.failure = FailureReason.BAD_REQUEST
                    session.detail = ENROLLMENT_IN_PROGRESS
                    logger.warning(f"Enrollment already in progress for account {account_id}")
                    return session

            session = self._new_session(
                account_id,
                SessionKind.ENROLLMENT,
                self.enrollment_budget,
                state=SessionState.AWAITING_ENROLLMENT_EMBEDDING,
            )
            self._sessions[session.session_id] = session

        logger.info(f"Enrollment session {session.session_id[:8]} started for account {account_id}")
        return session

    def _open_verification(self, account_id: str, budget: SampleBudget) -> AuthSession:
        session = self._new_session(account_id, SessionKind.VERIFICATION, budget)

        try:
            session.enrolled = self.store.get_embedding(account_id)
        except AccountNotFoundError:
            session.state = SessionState.REJECTED
            session.failure = FailureReason.UNKNOWN_ACCOUNT
            logger.info(f"Verification rejected: account {account_id} is not enrolled")
            return session
        except StoreUnavailableError as e:
            logger.error(f"Verification could not read descriptor store: {e}")
            raise AuthError(FailureReason.INTERNAL_ERROR, detail="Descriptor store unavailable", retryable=True) from e

        session.state = SessionState.AWAITING_VERIFICATION_EMBEDDING
        return session

    def begin_verification(self, account_id: str) -> AuthSession:
        """
        Start a verification session for an account.

        Reads the enrolled embedding once. A non-enrolled account yields a
        session that is already Rejected with UnknownAccount.

        Raises:
            AuthError: InternalError if the descriptor store is unavailable.
        """
        self._prune_sessions()
        session = self._open_verification(account_id, self.verification_budget)

        with self._sessions_lock:
            self._sessions[session.session_id] = session

        if session.is_awaiting:
            logger.info(f"Verification session {session.session_id[:8]} started for account {account_id}")
        return session

    def get_session(self, session_id: str) -> AuthSession:
        """
        Look up a live session.

        Raises:
            SessionNotFoundError: If the id is unknown, abandoned or pruned.
        """
        with self._sessions_lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def abandon(self, session_id: str) -> None:
        """
        Cancel a session. Nothing needs to be released.

        Raises:
            SessionNotFoundError: If the id is unknown.
        """
        with self._sessions_lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            raise SessionNotFoundError(session_id)
        logger.info(f"Session {session_id[:8]} abandoned in state {session.state.value}")

    def active_session_count(self) -> int:
        """Number of sessions still awaiting an embedding."""
        with self._sessions_lock:
            return sum(1 for s in self._sessions.values() if s.is_awaiting)

    # ------------------------------------------------------------
    # Sample processing
    # ------------------------------------------------------------

    def _validate_probe(self, embedding: EmbeddingLike) -> np.ndarray:
        try:
            return to_embedding(embedding, self.embedding_dim)
        except InvalidEmbeddingError as e:
            logger.warning(f"Rejected malformed embedding: {e}")
            raise AuthError(FailureReason.BAD_REQUEST, detail=str(e)) from e

    def _outcome(self, session: AuthSession, accepted: bool, **kwargs) -> SampleOutcome:
        return SampleOutcome(
            session_id=session.session_id,
            state=session.state,
            accepted=accepted,
            failure=session.failure,
            detail=session.detail,
            attempts=session.attempts,
            attempts_remaining=session.attempts_remaining,
            **kwargs,
        )

    def _exhaust(self, session: AuthSession) -> None:
        """Apply the end-of-budget transition."""
        if session.kind is SessionKind.ENROLLMENT:
            session.state = SessionState.IDLE
            session.failure = FailureReason.BAD_REQUEST
            session.detail = ENROLLMENT_TIMEOUT
            logger.info(
                f"Enrollment for account {session.account_id} timed out "
                f"after {session.attempts} attempts"
            )
        else:
            session.state = SessionState.REJECTED
            session.failure = FailureReason.NO_MATCH
            session.enrolled = None
            logger.info(
                f"Verification rejected for account {session.account_id}: no match "
                f"in {session.attempts} attempts"
            )

    def submit_sample(self, session_id: str, embedding: Optional[EmbeddingLike]) -> SampleOutcome:
        """
        Feed one oracle result into a session.

        Args:
            session_id: Id returned by begin_enrollment / begin_verification.
            embedding: The sample, or None when the oracle found no face.

        Returns:
            SampleOutcome describing the session after this sample.

        Raises:
            SessionNotFoundError: If the session does not exist.
            AuthError: BadRequest for malformed samples (session unchanged),
                InternalError for store/issuer failures (session stays open).
        """
        session = self.get_session(session_id)
        return self._process(session, embedding)

    def _process(self, session: AuthSession, embedding: Optional[EmbeddingLike]) -> SampleOutcome:
        with session.lock:
            if not session.is_awaiting:
                # Terminal or failed sessions ignore further samples
                return self._outcome(session, accepted=False)

            if self._budget_exhausted(session):
                self._exhaust(session)
                return self._outcome(session, accepted=False)

            if embedding is None:
                session.attempts += 1
                if self._budget_exhausted(session):
                    self._exhaust(session)
                return self._outcome(session, accepted=False)

            probe = self._validate_probe(embedding)

            if session.kind is SessionKind.ENROLLMENT:
                return self._enroll_sample(session, probe)
            return self._verify_sample(session, probe)

    def _enroll_sample(self, session: AuthSession, probe: np.ndarray) -> SampleOutcome:
        session.attempts += 1

        try:
            replaced = self.store.put_embedding(session.account_id, probe)
        except (StoreConflictError, StoreUnavailableError) as e:
            logger.warning(f"Enrollment write failed for account {session.account_id}: {e}")
            raise AuthError(FailureReason.INTERNAL_ERROR, detail=str(e), retryable=True) from e

        session.state = SessionState.ENROLLED
        logger.info(
            f"Account {session.account_id} enrolled"
            f"{' (replaced previous embedding)' if replaced else ''}"
        )
        return self._outcome(session, accepted=True, replaced=replaced)

    def _verify_sample(self, session: AuthSession, probe: np.ndarray) -> SampleOutcome:
        try:
            distance, matched = self.matcher.is_match(probe, session.enrolled)
        except DimensionMismatchError as e:
            logger.warning(f"Probe/enrolled dimension mismatch for account {session.account_id}: {e}")
            raise AuthError(FailureReason.BAD_REQUEST, detail=str(e)) from e

        session.attempts += 1
        session.last_distance = distance
        logger.debug(
            f"Session {session.session_id[:8]} sample {session.attempts}: "
            f"distance={distance:.4f} matched={matched}"
        )

        if matched:
            try:
                credential = self.issuer.issue(session.account_id)
            except CredentialIssuerError as e:
                logger.error(f"Credential issuance failed for account {session.account_id}: {e}")
                raise AuthError(
                    FailureReason.INTERNAL_ERROR,
                    detail="Failed to generate auth token",
                    retryable=True,
                    distance=distance,
                ) from e

            session.state = SessionState.VERIFIED
            session.enrolled = None
            logger.info(f"Account {session.account_id} verified (distance={distance:.4f})")
            return self._outcome(
                session, accepted=True, distance=distance, matched=True, credential=credential
            )

        if self._budget_exhausted(session):
            self._exhaust(session)
        return self._outcome(session, accepted=True, distance=distance, matched=False)

    # ------------------------------------------------------------
    # Single-shot operations
    # ------------------------------------------------------------

    def enroll(self, account_id: str, embedding: EmbeddingLike) -> SampleOutcome:
        """
        Enroll (or re-enroll) an account with one embedding.

        Raises:
            AuthError: BadRequest for malformed embeddings or an enrollment
                already in progress, InternalError for store failures.
        """
        probe = self._validate_probe(embedding)

        session = self.begin_enrollment(account_id)
        if session.failure is not None:
            raise AuthError(session.failure, detail=session.detail)

        try:
            return self._process(session, probe)
        finally:
            with self._sessions_lock:
                self._sessions.pop(session.session_id, None)

    def verify(self, account_id: str, embedding: EmbeddingLike) -> SampleOutcome:
        """
        Verify one embedding against an account's enrolled embedding.

        The embedding is validated before the account lookup, so malformed
        input is always BadRequest. The outcome is terminal: Verified with a
        credential, or Rejected with UnknownAccount / NoMatch.

        Raises:
            AuthError: BadRequest or InternalError.
        """
        probe = self._validate_probe(embedding)
        session = self._open_verification(
            account_id,
            SampleBudget(max_attempts=1, timeout_sec=self.verification_budget.timeout_sec),
        )
        if not session.is_awaiting:
            return self._outcome(session, accepted=False)
        return self._process(session, probe)


# Singleton instance for the orchestrator
_orchestrator_instance: Optional[AuthOrchestrator] = None
_orchestrator_guard = threading.Lock()


def get_orchestrator() -> AuthOrchestrator:
    """
    Get or create the process-wide orchestrator wired from config.yaml.
    """
    global _orchestrator_instance

    with _orchestrator_guard:
        if _orchestrator_instance is None:
            from core.config import (
                get_enrollment_config,
                get_matching_config,
                get_verification_config,
            )
            from core.credential_issuer import get_credential_issuer
            from core.descriptor_store import get_descriptor_store
            from core.matching import EuclideanMatcher

            matching_config = get_matching_config()
            _orchestrator_instance = AuthOrchestrator(
                store=get_descriptor_store(),
                matcher=EuclideanMatcher(matching_config),
                issuer=get_credential_issuer(),
                enrollment_budget=SampleBudget.from_config(get_enrollment_config()),
                verification_budget=SampleBudget.from_config(get_verification_config()),
                embedding_dim=matching_config.get("embedding_dim"),
            )
            logger.info(
                f"Auth orchestrator ready (threshold={_orchestrator_instance.matcher.threshold})"
            )

    return _orchestrator_instance
