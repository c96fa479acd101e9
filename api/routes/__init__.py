"""
API Routes Package

This package contains route handlers organized by feature:
- verification.py: POST /verify (single embedding -> one-time token)
- enrollment.py: POST /enroll (single embedding enrollment)
- sessions.py: continuous-scanning enrollment / verification sessions
- credentials.py: one-time token redemption
- management.py: enrolled account listing and deletion
"""

from api.routes.verification import router as verification_router
from api.routes.enrollment import router as enrollment_router
from api.routes.sessions import router as sessions_router
from api.routes.credentials import router as credentials_router
from api.routes.management import router as management_router

__all__ = [
    "verification_router",
    "enrollment_router",
    "sessions_router",
    "credentials_router",
    "management_router",
]
