"""
Credential API Routes

POST /credentials/redeem consumes a one-time login token issued by a
successful verification and returns the account it belongs to. This is the
session-establishment step; each token works exactly once and only until it
expires.
"""

import logging

from fastapi import APIRouter

from api.errors import error_response
from api.schemas import ErrorResponse, RedeemRequest, RedeemResponse
from core.auth_orchestrator import AuthError, FailureReason
from core.credential_issuer import get_credential_issuer
from core.errors import CredentialIssuerError, InvalidCredentialError

# Setup logging
logger = logging.getLogger(__name__)

# Create router
router = APIRouter(prefix="/credentials", tags=["credentials"])


@router.post(
    "/redeem",
    response_model=RedeemResponse,
    responses={400: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
def redeem(request: RedeemRequest):
    """Exchange a one-time token for the verified account id."""
    issuer = get_credential_issuer()

    try:
        account_id = issuer.redeem(request.token)
    except InvalidCredentialError as e:
        logger.warning(f"Rejected credential redemption: {e}")
        return error_response(FailureReason.BAD_REQUEST, detail=str(e))
    except CredentialIssuerError as e:
        raise AuthError(FailureReason.INTERNAL_ERROR, detail=str(e), retryable=True) from e

    return RedeemResponse(account_id=account_id)
