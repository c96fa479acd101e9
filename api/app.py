"""
FastAPI Application Entry Point

This module creates and configures the FastAPI application for the
face login service.

The application provides:
- POST /verify: embedding -> one-time login token
- POST /enroll: store an account's embedding
- Session endpoints for continuous scanning
- Credential redemption and account management
- Health check endpoint

Usage:
    # From project root:
    uvicorn api.app:app --host 0.0.0.0 --port 8000 --reload

    # Or run directly:
    python -m api.app
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.errors import register_exception_handlers
from api.routes import (
    verification_router,
    enrollment_router,
    sessions_router,
    credentials_router,
    management_router,
)
from api.schemas import HealthResponse
from core.auth_orchestrator import get_orchestrator
from core.config import get_config, get_embedding_oracle_config, get_server_config
from core.descriptor_store import get_descriptor_store
from core.embedding_oracle import get_embedding_oracle
from core.errors import StoreUnavailableError


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Runs on startup:
    - Open the descriptor store and wire the orchestrator
    - Optionally pre-load the embedding model

    Runs on shutdown:
    - Close the descriptor store
    """
    logger.info("=" * 60)
    logger.info("Starting Face Login API")
    logger.info("=" * 60)

    orchestrator = get_orchestrator()
    store = get_descriptor_store()
    stats = store.get_stats()
    logger.info(f"Descriptor store ready: {stats['total_accounts']} accounts enrolled")
    logger.info(f"Match threshold: {orchestrator.matcher.threshold}")

    oracle_config = get_embedding_oracle_config()
    if oracle_config.get("preload", False):
        logger.info("Pre-loading embedding model...")
        get_embedding_oracle().load_model()
    else:
        logger.info("Embedding model will be loaded on first frame")

    logger.info("API startup complete!")
    logger.info("=" * 60)

    yield

    logger.info("Shutting down API...")
    store.close()
    logger.info("Shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="Face Login API",
    description="""
Passwordless login by face embedding comparison.

## Features
- **Enrollment**: Store one face embedding per account (re-enrolling replaces it)
- **Verification**: Compare a live embedding by Euclidean distance and receive a one-time token
- **Sessions**: Continuous scanning with attempt and time budgets
- **Credentials**: Redeem a one-time token exactly once

## Verification
`POST /verify` with `{"accountId": "...", "embedding": [...]}`.
Failures use one of `UnknownAccount`, `NoMatch`, `BadRequest`, `InternalError`.
    """,
    version="0.1.0",
    lifespan=lifespan,
)

# Configure CORS for browser clients
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

# Include routers
app.include_router(verification_router)
app.include_router(enrollment_router)
app.include_router(sessions_router)
app.include_router(credentials_router)
app.include_router(management_router)


# ============================================================
# Health Check Endpoint
# ============================================================

@app.get("/health", response_model=HealthResponse, tags=["system"])
def health_check():
    """
    Check the health of the API and its dependencies.

    Returns status of:
    - Embedding model (loaded/not loaded)
    - Number of enrolled accounts
    - Sessions currently awaiting an embedding
    """
    orchestrator = get_orchestrator()
    store = get_descriptor_store()
    oracle = get_embedding_oracle()

    status = "healthy"
    try:
        enrolled = store.get_stats()["total_accounts"]
    except StoreUnavailableError as e:
        logger.warning(f"Health check could not read descriptor store: {e}")
        status = "degraded"
        enrolled = 0

    return HealthResponse(
        status=status,
        oracle_backend=oracle.backend,
        oracle_loaded=oracle.is_loaded,
        enrolled_accounts=enrolled,
        active_sessions=orchestrator.active_session_count(),
        match_threshold=orchestrator.matcher.threshold,
    )


@app.get("/", tags=["system"])
async def root():
    """Root endpoint with API information."""
    return {
        "name": "Face Login API",
        "version": "0.1.0",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    get_config()
    server_config = get_server_config()

    logger.info(f"Starting server on {server_config['host']}:{server_config['port']}")
    uvicorn.run(
        "api.app:app",
        host=server_config["host"],
        port=server_config["port"],
        reload=True,
        log_level="info",
    )
