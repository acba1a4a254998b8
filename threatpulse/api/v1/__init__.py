"""API v1 routes."""

from fastapi import APIRouter

from threatpulse.api.v1 import auth, health, mfa, users

router = APIRouter()
router.include_router(health.router, prefix="/health", tags=["health"])
router.include_router(auth.router, prefix="/auth", tags=["auth"])
router.include_router(mfa.router, prefix="/mfa", tags=["mfa"])
router.include_router(users.router, prefix="/users", tags=["users"])
