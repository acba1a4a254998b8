"""Request/response schemas for auth endpoints, identities and permission sets."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

# Closed set of roles; anything else stored in the database fails closed.
RoleName = Literal["admin", "manager", "analyst"]

ROLE_VALUES: frozenset[str] = frozenset({"admin", "manager", "analyst"})

DEFAULT_SIGNUP_ROLE: RoleName = "analyst"


def normalize_email(value: str) -> str:
    """Trim and lower-case; require one '@' with text on both sides."""
    normalized = (value or "").strip().lower()
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or "@" in domain:
        raise ValueError("email must be a valid address")
    return normalized


class CamelModel(BaseModel):
    """Base for payloads shared with the dashboard: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class SignInRequest(BaseModel):
    """Credentials for sign-in."""

    email: str = Field(..., min_length=1, max_length=255, description="Account email")
    password: str = Field(..., min_length=1, max_length=128, description="Password")

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        return normalize_email(v)


class SignUpRequest(BaseModel):
    """Self-service registration. New accounts get the analyst role."""

    email: str = Field(..., min_length=3, max_length=255, description="Account email")
    password: str = Field(..., min_length=8, max_length=128, description="Password")
    name: str = Field(..., min_length=1, max_length=255, description="Display name")

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        return normalize_email(v)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("name must be non-empty")
        return v.strip()


class Identity(CamelModel):
    """Client-side projection of an account. Derived; never authoritative."""

    id: str
    email: str
    name: str
    role: RoleName
    avatar: str | None = None
    created_at: datetime
    last_login: datetime | None = None
    is_active: bool = True


class PermissionSet(CamelModel):
    """Boolean capabilities derived solely from role."""

    model_config = ConfigDict(frozen=True)

    can_view_dashboard: bool = False
    can_manage_users: bool = False
    can_configure_alerts: bool = False
    can_export_data: bool = False
    can_view_audit_log: bool = False
    can_delete_audit_log: bool = False
    can_manage_integrations: bool = False


class SessionInfo(CamelModel):
    """Bearer token handed to the client after (complete) authentication."""

    access_token: str
    token_type: str = "bearer"
    expires_at: datetime


class AuthResponse(CamelModel):
    """Successful sign-in, sign-up or MFA completion."""

    mfa_required: Literal[False] = False
    user: Identity
    session: SessionInfo


class MFAChallengeResponse(CamelModel):
    """Password accepted but a second factor is required; no session exists yet."""

    mfa_required: Literal[True] = True
    mfa_token: str = Field(..., description="Short-lived challenge token for /auth/mfa/verify")
    expires_at: datetime


class MFAVerifyRequest(CamelModel):
    """Second step of sign-in."""

    mfa_token: str = Field(..., min_length=1)
    code: str = Field(..., min_length=1, max_length=64)
    is_recovery: bool = False


class ProfileUpdateRequest(CamelModel):
    """Self-service profile edit (role and email are admin-managed)."""

    name: str | None = Field(default=None, min_length=1, max_length=255)
    avatar: str | None = Field(default=None, max_length=2048)


class SignOutResponse(BaseModel):
    message: str = "Signed out successfully"
