"""Second-factor enrollment and management for the signed-in account."""

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from threatpulse.api.v1.auth import get_current_account, to_http_exception
from threatpulse.core.config import get_settings
from threatpulse.core.database import get_db
from threatpulse.core.errors import AuthError, MFAInvalidCode
from threatpulse.models import Account
from threatpulse.schemas.mfa import (
    EnrollmentCodeRequest,
    EnrollmentCompleteResponse,
    EnrollmentStartResponse,
    EnrollmentVerifiedResponse,
    MFAStatusResponse,
)
from threatpulse.services import mfa

router = APIRouter()


@router.get("", response_model=MFAStatusResponse)
def get_mfa_status(
    account: Annotated[Account, Depends(get_current_account)],
    db: Annotated[Session, Depends(get_db)],
) -> MFAStatusResponse:
    return MFAStatusResponse(enabled=mfa.is_enabled(db, account.id))


@router.post("/enrollment", response_model=EnrollmentStartResponse)
def start_enrollment(
    account: Annotated[Account, Depends(get_current_account)],
    db: Annotated[Session, Depends(get_db)],
) -> EnrollmentStartResponse:
    """
    Generate a fresh shared secret. Calling this again restarts enrollment and
    discards the previous secret.
    """
    try:
        started = mfa.begin_enrollment(db, account, get_settings())
    except AuthError as e:
        raise to_http_exception(e) from e
    return EnrollmentStartResponse(
        secret=started.secret,
        provisioning_uri=started.provisioning_uri,
    )


@router.post("/enrollment/verify", response_model=EnrollmentVerifiedResponse)
def verify_enrollment(
    body: EnrollmentCodeRequest,
    account: Annotated[Account, Depends(get_current_account)],
    db: Annotated[Session, Depends(get_db)],
) -> EnrollmentVerifiedResponse:
    """Check the first authenticator code and prepare recovery codes."""
    try:
        count = mfa.verify_enrollment_code(db, account, body.code, get_settings())
    except MFAInvalidCode as e:
        # Clients read 401 on this route as an expired session.
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=e.message
        ) from e
    except AuthError as e:
        raise to_http_exception(e) from e
    return EnrollmentVerifiedResponse(backup_code_count=count)


@router.post("/enrollment/complete", response_model=EnrollmentCompleteResponse)
def complete_enrollment(
    account: Annotated[Account, Depends(get_current_account)],
    db: Annotated[Session, Depends(get_db)],
) -> EnrollmentCompleteResponse:
    """Enable MFA. The recovery codes in this response cannot be fetched again."""
    try:
        codes = mfa.complete_enrollment(db, account)
    except AuthError as e:
        raise to_http_exception(e) from e
    return EnrollmentCompleteResponse(backup_codes=codes)


@router.delete("", response_model=MFAStatusResponse)
def disable_mfa(
    account: Annotated[Account, Depends(get_current_account)],
    db: Annotated[Session, Depends(get_db)],
) -> MFAStatusResponse:
    """Turn MFA off, deleting the secret and every recovery code."""
    mfa.disable(db, account)
    return MFAStatusResponse(enabled=False)
