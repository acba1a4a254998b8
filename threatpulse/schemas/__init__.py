"""Pydantic request/response schemas."""

from threatpulse.schemas.auth import (
    ROLE_VALUES,
    AuthResponse,
    Identity,
    MFAChallengeResponse,
    PermissionSet,
    RoleName,
    SessionInfo,
)
from threatpulse.schemas.health import HealthResponse
from threatpulse.schemas.mfa import EnrollmentCompleteResponse, EnrollmentStartResponse

__all__ = [
    "ROLE_VALUES",
    "AuthResponse",
    "EnrollmentCompleteResponse",
    "EnrollmentStartResponse",
    "HealthResponse",
    "Identity",
    "MFAChallengeResponse",
    "PermissionSet",
    "RoleName",
    "SessionInfo",
]
