"""
Account Management API Routes

This module provides REST endpoints for managing enrolled accounts:
- GET /accounts: List all enrolled accounts
- GET /accounts/{account_id}: Get enrollment details
- DELETE /accounts/{account_id}: Remove an account's enrolled embedding

Raw embeddings are never returned by these endpoints.
"""

from fastapi import APIRouter

from api.errors import error_response
from api.schemas import (
    AccountInfo,
    AccountListResponse,
    DeleteAccountResponse,
    ErrorResponse,
)
from core.auth_orchestrator import AuthError, FailureReason
from core.descriptor_store import get_descriptor_store
from core.errors import StoreConflictError, StoreUnavailableError

# Create router
router = APIRouter(prefix="/accounts", tags=["accounts"])


def _to_account_info(record: dict) -> AccountInfo:
    return AccountInfo(
        account_id=record["account_id"],
        embedding_dim=record["embedding_dim"],
        enrolled_at=str(record["enrolled_at"]),
        updated_at=str(record["updated_at"]) if record.get("updated_at") else None,
    )


@router.get("", response_model=AccountListResponse)
def list_accounts():
    """
    List all enrolled accounts.

    Returns the account id, embedding dimension and enrollment timestamps
    for each account.
    """
    store = get_descriptor_store()
    try:
        records = store.list_accounts()
    except StoreUnavailableError as e:
        raise AuthError(FailureReason.INTERNAL_ERROR, detail=str(e), retryable=True) from e

    return AccountListResponse(
        accounts=[_to_account_info(r) for r in records],
        total=len(records),
    )


@router.get("/{account_id}", response_model=AccountInfo, responses={404: {"model": ErrorResponse}})
def get_account(account_id: str):
    """
    Get enrollment details for one account.

    Raises:
        404: If the account is not enrolled.
    """
    store = get_descriptor_store()
    try:
        record = store.get_record(account_id)
    except StoreUnavailableError as e:
        raise AuthError(FailureReason.INTERNAL_ERROR, detail=str(e), retryable=True) from e

    if record is None:
        return error_response(FailureReason.UNKNOWN_ACCOUNT)

    return _to_account_info(record)


@router.delete("/{account_id}", response_model=DeleteAccountResponse, responses={404: {"model": ErrorResponse}})
def delete_account(account_id: str):
    """
    Delete an account's enrolled embedding.

    The account can enroll again afterwards.

    Raises:
        404: If the account is not enrolled.
    """
    store = get_descriptor_store()
    try:
        deleted = store.delete_embedding(account_id)
    except (StoreConflictError, StoreUnavailableError) as e:
        raise AuthError(FailureReason.INTERNAL_ERROR, detail=str(e), retryable=True) from e

    if not deleted:
        return error_response(FailureReason.UNKNOWN_ACCOUNT)

    return DeleteAccountResponse(
        success=True,
        account_id=account_id,
        message=f"Account {account_id} deleted successfully",
    )
