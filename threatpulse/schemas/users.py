"""Request/response schemas for administrative user management."""

from pydantic import Field, field_validator

from threatpulse.schemas.auth import CamelModel, Identity, RoleName, normalize_email


class UserCreateRequest(CamelModel):
    """Admin-created account with an explicit role."""

    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=8, max_length=128)
    name: str = Field(..., min_length=1, max_length=255)
    role: RoleName = "analyst"

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        return normalize_email(v)


class UserUpdateRequest(CamelModel):
    """Partial update; omitted fields are left unchanged."""

    email: str | None = Field(default=None, min_length=3, max_length=255)
    name: str | None = Field(default=None, min_length=1, max_length=255)
    role: RoleName | None = None
    is_active: bool | None = None

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str | None) -> str | None:
        if v is None:
            return None
        return normalize_email(v)


class UsersListResponse(CamelModel):
    """Response for GET /users."""

    users: list[Identity]
    total: int
    active: int
