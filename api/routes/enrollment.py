"""
Enrollment API Routes

This module provides POST /enroll for single-shot enrollment: the client sends
the first embedding its scanner produced and the service stores it as the
account's only enrolled embedding. Enrolling again replaces the previous
embedding.

For continuous scanning with a server-side attempt budget, use the session
endpoints in api/routes/sessions.py instead.
"""

import logging

from fastapi import APIRouter

from api.schemas import EnrollRequest, EnrollResponse, ErrorResponse
from core.auth_orchestrator import get_orchestrator

# Setup logging
logger = logging.getLogger(__name__)

# Create router
router = APIRouter(tags=["enrollment"])


@router.post(
    "/enroll",
    response_model=EnrollResponse,
    status_code=201,
    responses={400: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
def enroll(request: EnrollRequest):
    """
    Enroll or re-enroll an account with one face embedding.

    Account sign-up and password handling happen before this call and are
    not part of this service.
    """
    orchestrator = get_orchestrator()
    outcome = orchestrator.enroll(request.account_id, request.embedding)

    return EnrollResponse(
        account_id=request.account_id,
        replaced=outcome.replaced,
    )
