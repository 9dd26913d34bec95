"""API v1 router aggregator.

All v1 endpoint routers are included here, mounted at /api/v1.
"""

from fastapi import APIRouter

from account_trust.api.v1 import account, auth

router = APIRouter()

# =============================================================================
# Anonymous flows (emailed links, resend, reset)
# =============================================================================

router.include_router(auth.router, prefix="/auth", tags=["auth"])

# =============================================================================
# Authenticated account security
# =============================================================================

router.include_router(account.router, prefix="/account", tags=["account"])
