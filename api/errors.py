"""
HTTP error mapping

Every failure the API reports uses one of four reasons, each with a fixed HTTP
status and a stable message:

    UnknownAccount  404
    NoMatch         401   (body also carries the distance)
    BadRequest      400   (missing fields, wrong vector length, bad frames)
    InternalError   503   (store / issuer / oracle unavailable, retryable)

Collaborator failures are never reported as NoMatch, so a client can tell
"face not recognized" apart from "service unavailable".
"""

import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from core.auth_orchestrator import PUBLIC_MESSAGES, AuthError, FailureReason
from core.errors import SessionNotFoundError

logger = logging.getLogger(__name__)

STATUS_CODES = {
    FailureReason.UNKNOWN_ACCOUNT: 404,
    FailureReason.NO_MATCH: 401,
    FailureReason.BAD_REQUEST: 400,
    FailureReason.INTERNAL_ERROR: 503,
}


def error_response(
    reason: FailureReason,
    detail: Optional[str] = None,
    distance: Optional[float] = None,
    retryable: bool = False,
    status_code: Optional[int] = None,
) -> JSONResponse:
    """Build the JSON error body for a failure reason."""
    body = {
        "error": reason.value,
        "message": PUBLIC_MESSAGES[reason],
        "retryable": retryable,
    }
    if detail is not None:
        body["detail"] = detail
    if distance is not None:
        body["distance"] = distance

    return JSONResponse(
        status_code=status_code or STATUS_CODES[reason],
        content=body,
    )


def _format_validation_errors(exc: RequestValidationError) -> str:
    parts = []
    for err in exc.errors():
        location = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        parts.append(f"{location}: {err.get('msg')}" if location else str(err.get("msg")))
    return "; ".join(parts)


def register_exception_handlers(app: FastAPI) -> None:
    """Install the handlers translating exceptions into error bodies."""

    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError):
        return error_response(
            exc.reason,
            detail=exc.detail,
            distance=exc.distance if exc.reason is FailureReason.NO_MATCH else None,
            retryable=exc.retryable,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        detail = _format_validation_errors(exc)
        logger.warning(f"Rejected request to {request.url.path}: {detail}")
        return error_response(FailureReason.BAD_REQUEST, detail=detail)

    @app.exception_handler(SessionNotFoundError)
    async def session_not_found_handler(request: Request, exc: SessionNotFoundError):
        return error_response(FailureReason.BAD_REQUEST, detail=str(exc))

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unexpected error on {request.url.path}: {exc}")
        return error_response(
            FailureReason.INTERNAL_ERROR,
            retryable=True,
            status_code=500,
        )
