"""
Verification API Routes

This module provides the POST /verify endpoint: one embedding captured by the
client is compared against the account's enrolled embedding and, on a match,
exchanged for a single-use login token.

Request:   {"accountId": "...", "embedding": [0.1, ...]}
Responses: 200 {"success": true, "token": "...", "distance": 0.31}
           404 {"error": "UnknownAccount", ...}
           401 {"error": "NoMatch", "distance": 0.92, ...}
           400 {"error": "BadRequest", ...}
           503 {"error": "InternalError", "retryable": true, ...}
"""

import logging

from fastapi import APIRouter

from api.errors import error_response
from api.schemas import VerifyRequest, VerifyResponse, ErrorResponse
from core.auth_orchestrator import FailureReason, SessionState, get_orchestrator

# Setup logging
logger = logging.getLogger(__name__)

# Create router
router = APIRouter(tags=["verification"])


@router.post(
    "/verify",
    response_model=VerifyResponse,
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)
def verify(request: VerifyRequest):
    """
    Verify a face embedding for an account.

    The raw embeddings are never returned; the token is the only artifact of
    a successful verification.
    """
    orchestrator = get_orchestrator()
    outcome = orchestrator.verify(request.account_id, request.embedding)

    if outcome.state is SessionState.VERIFIED:
        return VerifyResponse(
            token=outcome.credential.token,
            distance=outcome.distance,
            expires_at=outcome.credential.expires_at.isoformat(),
        )

    if outcome.failure is FailureReason.UNKNOWN_ACCOUNT:
        return error_response(FailureReason.UNKNOWN_ACCOUNT)

    return error_response(FailureReason.NO_MATCH, distance=outcome.distance)
