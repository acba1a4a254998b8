"""Request/response schemas for second-factor enrollment and management."""

from pydantic import BaseModel, Field

from threatpulse.schemas.auth import CamelModel


class MFAStatusResponse(BaseModel):
    """Whether MFA is active for the current account."""

    enabled: bool


class EnrollmentStartResponse(CamelModel):
    """Fresh shared secret for an authenticator app."""

    secret: str = Field(..., description="Base32 shared secret (32 chars)")
    provisioning_uri: str = Field(..., description="otpauth:// URI to render as a QR code")


class EnrollmentCodeRequest(BaseModel):
    """Code shown by the authenticator app, proving the secret was imported."""

    code: str = Field(..., min_length=1, max_length=16)


class EnrollmentVerifiedResponse(CamelModel):
    """Enrollment code accepted; recovery codes are ready to be shown."""

    verified: bool = True
    backup_code_count: int


class EnrollmentCompleteResponse(CamelModel):
    """MFA enabled. backup_codes are returned here once and never again."""

    enabled: bool = True
    backup_codes: list[str]
