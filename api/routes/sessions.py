"""
Session API Routes

Continuous-scanning variant of enrollment and verification. The client opens a
session, then submits one sample per scan tick until the session reaches a
terminal state or its attempt/time budget runs out:

- POST   /sessions/enrollment          open an enrollment session
- POST   /sessions/verification        open a verification session
- POST   /sessions/{session_id}/samples submit one tick
- GET    /sessions/{session_id}        current state
- DELETE /sessions/{session_id}        abandon

A tick carries either an embedding computed on the client or a base64 frame
that the server turns into an embedding with its own oracle. A tick with
neither reports "no face this time".
"""

import logging
from typing import Optional

from fastapi import APIRouter

from api.errors import error_response
from api.schemas import (
    ErrorResponse,
    SampleRequest,
    SessionResponse,
    StartSessionRequest,
)
from core.auth_orchestrator import (
    AuthError,
    AuthSession,
    FailureReason,
    SampleOutcome,
    SessionState,
    get_orchestrator,
)
from core.embedding_oracle import decode_frame, get_embedding_oracle
from core.errors import InvalidEmbeddingError

# Setup logging
logger = logging.getLogger(__name__)

# Create router
router = APIRouter(prefix="/sessions", tags=["sessions"])

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    401: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


def build_session_response(
    session: AuthSession,
    outcome: Optional[SampleOutcome] = None,
    face_detected: Optional[bool] = None,
) -> SessionResponse:
    """Public view of a session; never includes embeddings."""
    response = SessionResponse(
        session_id=session.session_id,
        account_id=session.account_id,
        kind=session.kind.value,
        state=session.state.value,
        attempts=session.attempts,
        attempts_remaining=session.attempts_remaining,
        distance=session.last_distance,
        error=session.failure.value if session.failure else None,
        detail=session.detail,
        face_detected=face_detected,
    )

    if outcome is not None:
        response.accepted = outcome.accepted
        response.matched = outcome.matched
        if outcome.distance is not None:
            response.distance = outcome.distance
        if outcome.credential is not None:
            response.token = outcome.credential.token
            response.expires_at = outcome.credential.expires_at.isoformat()

    return response


def failed_session_response(session: AuthSession):
    """Error body for a session that ended without success."""
    return error_response(
        session.failure,
        detail=session.detail,
        distance=session.last_distance if session.failure is FailureReason.NO_MATCH else None,
    )


def capture_from_frame(frame_b64: str):
    """Run the server-side oracle on a base64 frame."""
    frame = decode_frame(frame_b64)
    if frame is None:
        raise AuthError(FailureReason.BAD_REQUEST, detail="Invalid image data")

    oracle = get_embedding_oracle()
    try:
        return oracle.capture(frame)
    except ImportError as e:
        logger.error(f"Embedding oracle unavailable: {e}")
        raise AuthError(FailureReason.INTERNAL_ERROR, detail="Embedding oracle unavailable") from e
    except InvalidEmbeddingError as e:
        logger.error(f"Embedding oracle produced an unusable vector: {e}")
        raise AuthError(FailureReason.INTERNAL_ERROR, detail="Embedding oracle misconfigured") from e


@router.post("/enrollment", response_model=SessionResponse, status_code=201, responses=ERROR_RESPONSES)
def start_enrollment(request: StartSessionRequest):
    """Open an enrollment session for an account."""
    session = get_orchestrator().begin_enrollment(request.account_id)
    if session.failure is not None:
        return failed_session_response(session)
    return build_session_response(session)


@router.post("/verification", response_model=SessionResponse, status_code=201, responses=ERROR_RESPONSES)
def start_verification(request: StartSessionRequest):
    """Open a verification session; unknown accounts are rejected immediately."""
    session = get_orchestrator().begin_verification(request.account_id)
    if session.failure is not None:
        return failed_session_response(session)
    return build_session_response(session)


@router.post("/{session_id}/samples", response_model=SessionResponse, responses=ERROR_RESPONSES)
def submit_sample(session_id: str, request: SampleRequest):
    """
    Submit one scan tick.

    Returns 200 while the session is in progress or once it succeeded
    (Enrolled, or Verified with the token). A session that ended without
    success returns its failure: 401 NoMatch, 404 UnknownAccount or
    400 BadRequest (enrollment timed out).
    """
    orchestrator = get_orchestrator()
    # Fail fast on unknown sessions before running the oracle
    orchestrator.get_session(session_id)

    if request.frame is not None:
        embedding = capture_from_frame(request.frame)
    else:
        embedding = request.embedding

    outcome = orchestrator.submit_sample(session_id, embedding)
    session = orchestrator.get_session(session_id)

    if session.failure is not None and session.state in (SessionState.REJECTED, SessionState.IDLE):
        return failed_session_response(session)

    return build_session_response(session, outcome, face_detected=embedding is not None)


@router.get("/{session_id}", response_model=SessionResponse, responses=ERROR_RESPONSES)
def get_session(session_id: str):
    """Current state of a session."""
    session = get_orchestrator().get_session(session_id)
    return build_session_response(session)


@router.delete("/{session_id}", status_code=204)
def abandon_session(session_id: str):
    """Abandon a session before it reaches a terminal state."""
    get_orchestrator().abandon(session_id)
