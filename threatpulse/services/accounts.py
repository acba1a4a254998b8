"""Credential store: accounts, profiles and session records."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from threatpulse.core.database import as_utc
from threatpulse.core.errors import AccountExists, AuthenticationFailed, ProfileMissing
from threatpulse.core.security import (
    PURPOSE_SESSION,
    IssuedToken,
    TokenCodec,
    hash_password,
    hash_token,
    verify_password,
)
from threatpulse.models import Account, AuthSession, Profile
from threatpulse.schemas.auth import DEFAULT_SIGNUP_ROLE, Identity, normalize_email
from threatpulse.services.permissions import parse_role

if TYPE_CHECKING:
    from threatpulse.core.config import Settings

logger = logging.getLogger(__name__)


def get_account(db: Session, account_id: str) -> Account | None:
    return db.query(Account).filter(Account.id == account_id).first()


def get_account_by_email(db: Session, email: str) -> Account | None:
    try:
        normalized = normalize_email(email)
    except ValueError:
        return None
    return db.query(Account).filter(Account.email == normalized).first()


def verify_credentials(db: Session, email: str, password: str) -> Account:
    """
    Return the account for a correct email/password pair.

    Unknown email, wrong password and deactivated account all raise the same
    AuthenticationFailed so callers cannot enumerate accounts.
    """
    account = get_account_by_email(db, email)
    if not verify_password(password, account.password_hash if account else None):
        logger.info("Sign-in rejected", extra={"reason": "bad_credentials"})
        raise AuthenticationFailed()
    if not account.is_active:
        logger.info("Sign-in rejected", extra={"reason": "inactive", "account_id": account.id})
        raise AuthenticationFailed()
    return account


def resolve_identity(account: Account) -> Identity:
    """Build the client projection; raises ProfileMissing if profile or role is unusable."""
    profile = account.profile
    role = parse_role(profile.role) if profile is not None else None
    if profile is None or role is None:
        logger.error(
            "Profile could not be resolved",
            extra={"account_id": account.id, "has_profile": profile is not None},
        )
        raise ProfileMissing()
    return Identity(
        id=account.id,
        email=account.email,
        name=profile.name,
        role=role,
        avatar=profile.avatar_url,
        created_at=as_utc(account.created_at),
        last_login=as_utc(account.last_login_at),
        is_active=account.is_active,
    )


def create_account(
    db: Session,
    email: str,
    password: str,
    name: str,
    role: str = DEFAULT_SIGNUP_ROLE,
    avatar_url: str | None = None,
) -> Account:
    """Create account + profile. Raises AccountExists if the email is taken."""
    normalized = normalize_email(email)
    if parse_role(role) is None:
        raise ValueError(f"Unknown role: {role!r}")
    if db.query(Account.id).filter(Account.email == normalized).first() is not None:
        raise AccountExists()
    account = Account(email=normalized, password_hash=hash_password(password), is_active=True)
    account.profile = Profile(name=name.strip(), role=role, avatar_url=avatar_url)
    db.add(account)
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise AccountExists(cause=e) from e
    db.refresh(account)
    logger.info("Account created", extra={"account_id": account.id, "role": role})
    return account


def create_session(
    db: Session,
    account: Account,
    codec: TokenCodec,
    settings: Settings,
    now: datetime | None = None,
) -> IssuedToken:
    """
    Issue a session token and record it. With SINGLE_SESSION_PER_ACCOUNT the
    account's previous sessions are deleted first.
    """
    issued = codec.issue(account.id, purpose=PURPOSE_SESSION, now=now)
    if settings.SINGLE_SESSION_PER_ACCOUNT:
        db.query(AuthSession).filter(AuthSession.account_id == account.id).delete(
            synchronize_session=False
        )
    db.add(
        AuthSession(
            account_id=account.id,
            token_hash=hash_token(issued.token),
            issued_at=issued.issued_at,
            expires_at=issued.expires_at,
            revoked=False,
        )
    )
    account.last_login_at = issued.issued_at
    db.commit()
    db.refresh(account)
    return issued


def authenticate_token(
    db: Session,
    token: str | None,
    codec: TokenCodec,
    now: datetime | None = None,
) -> Account | None:
    """Account behind a bearer token, or None if the token or its session is not valid."""
    account_id = codec.verify(token, purpose=PURPOSE_SESSION)
    if account_id is None:
        return None
    record = (
        db.query(AuthSession)
        .filter(AuthSession.token_hash == hash_token(token))
        .first()
    )
    current = now or datetime.now(UTC)
    if record is None or record.revoked or record.account_id != account_id:
        logger.info("Session rejected", extra={"reason": "no_active_session"})
        return None
    if as_utc(record.expires_at) <= current:
        logger.info("Session rejected", extra={"reason": "expired"})
        return None
    account = get_account(db, account_id)
    if account is None or not account.is_active:
        return None
    return account


def revoke_session(db: Session, token: str) -> int:
    """Delete the session row for token. Idempotent; returns rows removed."""
    deleted = (
        db.query(AuthSession)
        .filter(AuthSession.token_hash == hash_token(token))
        .delete(synchronize_session=False)
    )
    db.commit()
    return deleted


def revoke_all_sessions(db: Session, account_id: str) -> int:
    deleted = (
        db.query(AuthSession)
        .filter(AuthSession.account_id == account_id)
        .delete(synchronize_session=False)
    )
    db.commit()
    return deleted


def purge_expired_sessions(db: Session, now: datetime | None = None) -> int:
    """Delete every expired session row; returns how many were removed."""
    cutoff = now or datetime.now(UTC)
    deleted = (
        db.query(AuthSession)
        .filter(AuthSession.expires_at <= cutoff)
        .delete(synchronize_session=False)
    )
    db.commit()
    return deleted


def update_profile(
    db: Session,
    account: Account,
    name: str | None = None,
    avatar_url: str | None = None,
) -> Account:
    if account.profile is None:
        raise ProfileMissing()
    if name is not None:
        account.profile.name = name.strip()
    if avatar_url is not None:
        account.profile.avatar_url = avatar_url.strip() or None
    db.commit()
    db.refresh(account)
    return account


def list_accounts(
    db: Session,
    role: str | None = None,
    is_active: bool | None = None,
    search: str | None = None,
) -> list[Account]:
    query = db.query(Account).join(Profile, Profile.account_id == Account.id)
    if role is not None:
        query = query.filter(Profile.role == role)
    if is_active is not None:
        query = query.filter(Account.is_active == is_active)
    if search:
        pattern = f"%{search.strip().lower()}%"
        query = query.filter(
            (Account.email.like(pattern)) | (Profile.name.ilike(pattern))
        )
    return query.order_by(Account.created_at, Account.email).all()


def update_account(
    db: Session,
    account: Account,
    email: str | None = None,
    name: str | None = None,
    role: str | None = None,
    is_active: bool | None = None,
) -> Account:
    """
    Administrative edit. Deactivation revokes every session of the account; a
    role change takes effect on the next identity resolution.
    """
    if account.profile is None:
        raise ProfileMissing()
    if email is not None:
        normalized = normalize_email(email)
        if normalized != account.email:
            taken = db.query(Account.id).filter(Account.email == normalized).first()
            if taken is not None:
                raise AccountExists()
            account.email = normalized
    if name is not None:
        account.profile.name = name.strip()
    if role is not None:
        if parse_role(role) is None:
            raise ValueError(f"Unknown role: {role!r}")
        account.profile.role = role
    if is_active is not None:
        account.is_active = is_active
        if not is_active:
            db.query(AuthSession).filter(AuthSession.account_id == account.id).delete(
                synchronize_session=False
            )
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise AccountExists(cause=e) from e
    db.refresh(account)
    logger.info(
        "Account updated",
        extra={"account_id": account.id, "role": account.profile.role, "is_active": account.is_active},
    )
    return account


def delete_account(db: Session, account: Account) -> None:
    """Irreversible: removes the account with its profile, sessions and MFA config."""
    account_id = account.id
    db.delete(account)
    db.commit()
    logger.warning("Account deleted", extra={"account_id": account_id})
