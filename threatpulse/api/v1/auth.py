"""Sign-in, sign-up, MFA step-up, sign-out and auth dependencies (get_current_account, require_permission)."""

import logging
from collections.abc import Callable
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from threatpulse.core.config import get_settings
from threatpulse.core.database import get_db
from threatpulse.core.errors import (
    AccountExists,
    AuthenticationFailed,
    AuthError,
    InvalidInput,
    MFAAlreadyEnabled,
    MFAInvalidCode,
    ProfileMissing,
)
from threatpulse.core.security import PURPOSE_MFA, TokenCodec, get_token_codec
from threatpulse.models import Account
from threatpulse.schemas.auth import (
    AuthResponse,
    Identity,
    MFAChallengeResponse,
    MFAVerifyRequest,
    PermissionSet,
    ProfileUpdateRequest,
    SessionInfo,
    SignInRequest,
    SignOutResponse,
    SignUpRequest,
)
from threatpulse.services import accounts, mfa
from threatpulse.services.permissions import CAPABILITIES, has_permission, resolve_permissions

logger = logging.getLogger(__name__)
router = APIRouter()
security = HTTPBearer(auto_error=False)

_BEARER = {"WWW-Authenticate": "Bearer"}


def to_http_exception(err: AuthError) -> HTTPException:
    """Translate a service error into the HTTP status the client maps back."""
    if isinstance(err, AccountExists):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=err.message)
    if isinstance(err, InvalidInput):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=err.message)
    if isinstance(err, (AuthenticationFailed, MFAInvalidCode)):
        return HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail=err.message, headers=_BEARER
        )
    if isinstance(err, ProfileMissing):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=err.message)
    if isinstance(err, MFAAlreadyEnabled):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=err.message)
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=err.message)


def _issue_session(db: Session, account: Account, codec: TokenCodec) -> AuthResponse:
    issued = accounts.create_session(db, account, codec, get_settings())
    try:
        identity = accounts.resolve_identity(account)
    except ProfileMissing as e:
        raise to_http_exception(e) from e
    logger.info("Session issued", extra={"account_id": account.id, "role": identity.role})
    return AuthResponse(
        user=identity,
        session=SessionInfo(access_token=issued.token, expires_at=issued.expires_at),
    )


@router.post("/signin", response_model=AuthResponse | MFAChallengeResponse)
def sign_in(
    body: SignInRequest,
    db: Annotated[Session, Depends(get_db)],
    codec: Annotated[TokenCodec, Depends(get_token_codec)],
) -> AuthResponse | MFAChallengeResponse:
    """
    Authenticate with email and password.

    Returns a session, or an MFA challenge when a second factor is enabled (no
    session exists until /auth/mfa/verify succeeds).
    """
    try:
        account = accounts.verify_credentials(db, body.email, body.password)
        accounts.resolve_identity(account)
    except AuthError as e:
        raise to_http_exception(e) from e
    if mfa.is_enabled(db, account.id):
        challenge = codec.issue(account.id, purpose=PURPOSE_MFA)
        logger.info("MFA challenge issued", extra={"account_id": account.id})
        return MFAChallengeResponse(mfa_token=challenge.token, expires_at=challenge.expires_at)
    return _issue_session(db, account, codec)


@router.post("/signup", response_model=AuthResponse)
def sign_up(
    body: SignUpRequest,
    db: Annotated[Session, Depends(get_db)],
    codec: Annotated[TokenCodec, Depends(get_token_codec)],
) -> AuthResponse:
    """Register a new analyst account and sign it in."""
    try:
        account = accounts.create_account(db, body.email, body.password, body.name)
    except AccountExists as e:
        raise to_http_exception(e) from e
    return _issue_session(db, account, codec)


@router.post("/mfa/verify", response_model=AuthResponse)
def verify_mfa(
    body: MFAVerifyRequest,
    db: Annotated[Session, Depends(get_db)],
    codec: Annotated[TokenCodec, Depends(get_token_codec)],
) -> AuthResponse:
    """Complete sign-in with a TOTP code or a one-time recovery code."""
    account_id = codec.verify(body.mfa_token, purpose=PURPOSE_MFA)
    account = accounts.get_account(db, account_id) if account_id else None
    if account is None or not account.is_active:
        raise to_http_exception(MFAInvalidCode())
    try:
        mfa.verify_login(db, account.id, body.code, body.is_recovery, get_settings())
    except MFAInvalidCode as e:
        raise to_http_exception(e) from e
    return _issue_session(db, account, codec)


@router.post("/signout", response_model=SignOutResponse)
def sign_out(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
    db: Annotated[Session, Depends(get_db)],
) -> SignOutResponse:
    """Revoke the caller's session. Idempotent: a missing or unknown token is not an error."""
    if credentials is not None and credentials.credentials:
        removed = accounts.revoke_session(db, credentials.credentials)
        logger.info("Signed out", extra={"sessions_removed": removed})
    return SignOutResponse()


def get_current_account(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
    db: Annotated[Session, Depends(get_db)],
    codec: Annotated[TokenCodec, Depends(get_token_codec)],
) -> Account:
    """Dependency: require a valid Bearer session and return its account. Raises 401 otherwise."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers=_BEARER,
        )
    account = accounts.authenticate_token(db, credentials.credentials, codec)
    if account is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired session",
            headers=_BEARER,
        )
    return account


def require_permission(capability: str) -> Callable[..., Account]:
    """Dependency factory: require the current account's role to grant capability (403 otherwise)."""
    if capability not in CAPABILITIES:
        raise ValueError(f"Unknown capability: {capability}")

    def dependency(
        account: Annotated[Account, Depends(get_current_account)],
    ) -> Account:
        role = account.profile.role if account.profile is not None else None
        if not has_permission(role, capability):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return account

    return dependency


@router.get("/me", response_model=Identity)
def read_me(
    account: Annotated[Account, Depends(get_current_account)],
) -> Identity:
    """Fresh identity for the caller; clients call this on every restore."""
    try:
        return accounts.resolve_identity(account)
    except ProfileMissing as e:
        raise to_http_exception(e) from e


@router.patch("/me", response_model=Identity)
def update_me(
    body: ProfileUpdateRequest,
    account: Annotated[Account, Depends(get_current_account)],
    db: Annotated[Session, Depends(get_db)],
) -> Identity:
    """Edit own display name and avatar."""
    try:
        updated = accounts.update_profile(db, account, name=body.name, avatar_url=body.avatar)
        return accounts.resolve_identity(updated)
    except ProfileMissing as e:
        raise to_http_exception(e) from e


@router.get("/permissions", response_model=PermissionSet)
def read_permissions(
    account: Annotated[Account, Depends(get_current_account)],
) -> PermissionSet:
    """Capabilities of the caller's current role (all false if the role is unknown)."""
    return resolve_permissions(account.profile.role if account.profile is not None else None)
