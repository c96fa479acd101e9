"""
API Layer for the Face Login Service

This package provides the FastAPI-based API layer that exposes:
- POST /verify and POST /enroll for single-embedding requests
- Session endpoints for continuous scanning
- Credential redemption, account management and health checks

The API layer connects camera clients to the core protocol in core/.
"""
