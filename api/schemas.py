"""
Pydantic Schemas for API Request/Response Models

This module defines the data models used for API communication between
the client (camera + embedding oracle) and the face login service.

Wire models use camelCase field names (accountId, sessionId) on the wire
and snake_case attributes in Python. Embedding elements must be JSON numbers;
booleans and numeric strings are rejected instead of being coerced.

These schemas provide:
- Type validation
- Automatic documentation in OpenAPI/Swagger
- Clear interface contracts
"""

from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field, StrictFloat, model_validator
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base model serialized with camelCase aliases."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================
# Verification / Enrollment Schemas
# ============================================================

class EmbeddingRequest(WireModel):
    """Account identifier plus one embedding captured client-side."""
    account_id: str = Field(..., min_length=1, description="Account email or user id")
    embedding: List[StrictFloat] = Field(
        ...,
        min_length=1,
        description="Face embedding produced by the embedding oracle",
    )


class VerifyRequest(EmbeddingRequest):
    """Request for POST /verify."""


class VerifyResponse(WireModel):
    """Successful verification: the one-time credential and the match distance."""
    success: bool = Field(True)
    token: str = Field(..., description="Single-use login token")
    distance: float = Field(..., description="Euclidean distance to the enrolled embedding")
    expires_at: Optional[str] = Field(None, description="ISO timestamp when the token expires")


class EnrollRequest(EmbeddingRequest):
    """Request for POST /enroll."""


class EnrollResponse(WireModel):
    """Result of a single-shot enrollment."""
    success: bool = Field(True)
    account_id: str = Field(..., description="Enrolled account")
    replaced: bool = Field(False, description="True if a previous embedding was replaced")


class ErrorResponse(BaseModel):
    """Error body. error is one of UnknownAccount, NoMatch, BadRequest, InternalError."""
    error: str = Field(..., description="Failure reason")
    message: str = Field(..., description="Stable human-readable message")
    detail: Optional[str] = Field(None, description="Additional context")
    distance: Optional[float] = Field(None, description="Distance for NoMatch")
    retryable: bool = Field(False, description="True for transient infrastructure errors")


# ============================================================
# Session Schemas (continuous scanning)
# ============================================================

class StartSessionRequest(WireModel):
    """Request to open an enrollment or verification session."""
    account_id: str = Field(..., min_length=1, description="Account email or user id")


class SampleRequest(WireModel):
    """
    One scan tick.

    Send either an embedding computed client-side, or a base64 frame for the
    server-side oracle. Sending neither reports a tick without a face.
    """
    embedding: Optional[List[StrictFloat]] = Field(None, min_length=1)
    frame: Optional[str] = Field(None, min_length=1, description="Base64-encoded JPEG image")

    @model_validator(mode="after")
    def check_single_source(self):
        if self.embedding is not None and self.frame is not None:
            raise ValueError("Provide either embedding or frame, not both")
        return self


class SessionResponse(WireModel):
    """Current state of a session, after the latest sample if any."""
    session_id: str
    account_id: str
    kind: str = Field(..., description="enrollment or verification")
    state: str = Field(..., description="Protocol state")
    attempts: int = Field(0)
    attempts_remaining: int = Field(0)
    accepted: Optional[bool] = Field(None, description="Whether the last sample was used")
    face_detected: Optional[bool] = Field(None, description="False when the last tick had no face")
    distance: Optional[float] = Field(None, description="Distance of the last verification sample")
    matched: Optional[bool] = Field(None)
    token: Optional[str] = Field(None, description="Credential, only once Verified")
    expires_at: Optional[str] = Field(None)
    error: Optional[str] = Field(None, description="Failure reason, if the session failed")
    detail: Optional[str] = Field(None)


# ============================================================
# Credential Schemas
# ============================================================

class RedeemRequest(WireModel):
    """Request to consume a one-time credential."""
    token: str = Field(..., min_length=1)


class RedeemResponse(WireModel):
    """The account a redeemed credential belongs to."""
    success: bool = Field(True)
    account_id: str


# ============================================================
# Account Management Schemas
# ============================================================

class AccountInfo(WireModel):
    """Enrolled account summary. The embedding itself is never returned."""
    account_id: str = Field(..., description="Account identifier")
    embedding_dim: int = Field(..., description="Length of the enrolled embedding")
    enrolled_at: str = Field(..., description="Timestamp of first enrollment")
    updated_at: Optional[str] = Field(None, description="Timestamp of the last re-enrollment")


class AccountListResponse(WireModel):
    """Response containing list of enrolled accounts."""
    accounts: List[AccountInfo] = Field(default_factory=list)
    total: int = Field(0, description="Total number of enrolled accounts")


class DeleteAccountResponse(WireModel):
    """Response from account deletion."""
    success: bool = Field(..., description="Whether deletion was successful")
    account_id: str = Field(..., description="ID of deleted account")
    message: str = Field(..., description="Status message")


# ============================================================
# Health Check Schemas
# ============================================================

class HealthResponse(BaseModel):
    """System health check response."""
    status: str = Field(..., description="Overall status: 'healthy' or 'degraded'")
    oracle_backend: str = Field(..., description="Configured embedding oracle backend")
    oracle_loaded: bool = Field(..., description="Whether the embedding model is loaded")
    enrolled_accounts: int = Field(..., description="Number of enrolled accounts")
    active_sessions: int = Field(..., description="Sessions awaiting an embedding")
    match_threshold: float = Field(..., description="Euclidean distance threshold")
