"""Password hashing and the signed session token codec."""

import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from functools import lru_cache
from typing import Any

import bcrypt
import jwt

from threatpulse.core.config import get_settings

logger = logging.getLogger(__name__)

# Bcrypt cost (rounds); 12 is a good default for security vs speed.
BCRYPT_ROUNDS = 12

# Min/max lengths for email and password validation.
EMAIL_MAX_LEN = 255
PASSWORD_MIN_LEN = 8
PASSWORD_MAX_LEN = 128
NAME_MAX_LEN = 255

# Fixed session policy: a session token is valid for 24 hours after issue.
SESSION_TTL = timedelta(hours=24)

PURPOSE_SESSION = "session"
PURPOSE_MFA = "mfa"

# Verified against when the email is unknown, so both failure paths cost one bcrypt check.
_DUMMY_HASH = bcrypt.hashpw(b"threatpulse-dummy-password", bcrypt.gensalt(rounds=BCRYPT_ROUNDS))


def hash_password(plain_password: str) -> str:
    """Hash a plain-text password for storage. Do not store plain passwords."""
    # bcrypt has a 72-byte limit; truncate to avoid errors (validation already limits length).
    pw_bytes = plain_password.encode("utf-8")[:72]
    return bcrypt.hashpw(pw_bytes, bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(plain_password: str, hashed: str | None) -> bool:
    """Verify a plain password against a stored hash; a missing hash never matches."""
    pw_bytes = plain_password.encode("utf-8")[:72]
    if hashed is None:
        bcrypt.checkpw(pw_bytes, _DUMMY_HASH)
        return False
    try:
        return bcrypt.checkpw(pw_bytes, hashed.encode("utf-8"))
    except (ValueError, TypeError):
        return False


def hash_token(token: str) -> str:
    """SHA-256 hex digest of a bearer token; session rows store this, never the token."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class IssuedToken:
    token: str
    issued_at: datetime
    expires_at: datetime


class TokenCodec:
    """
    Issues and verifies signed, time-limited bearer tokens (HMAC JWT).

    Verification is stateless: signature, expiry and purpose only. Every
    rejection reason (expired, tampered, malformed, wrong purpose) returns None
    to the caller; the reason is only logged.
    """

    def __init__(
        self,
        secret: str,
        algorithm: str = "HS256",
        session_ttl: timedelta = SESSION_TTL,
        mfa_ttl: timedelta = timedelta(minutes=5),
    ) -> None:
        if not secret:
            raise ValueError("Token signing secret must be non-empty")
        self._secret = secret
        self._algorithm = algorithm
        self._ttls = {PURPOSE_SESSION: session_ttl, PURPOSE_MFA: mfa_ttl}

    def issue(
        self,
        account_id: str,
        purpose: str = PURPOSE_SESSION,
        now: datetime | None = None,
    ) -> IssuedToken:
        """Create a token for account_id. jti makes every token unique."""
        if purpose not in self._ttls:
            raise ValueError(f"Unknown token purpose: {purpose}")
        issued_at = (now or datetime.now(UTC)).replace(microsecond=0)
        expires_at = issued_at + self._ttls[purpose]
        payload: dict[str, Any] = {
            "sub": str(account_id),
            "purpose": purpose,
            "jti": secrets.token_urlsafe(16),
            "iat": issued_at,
            "exp": expires_at,
        }
        token = jwt.encode(payload, self._secret, algorithm=self._algorithm)
        return IssuedToken(token=token, issued_at=issued_at, expires_at=expires_at)

    def verify(self, token: str | None, purpose: str = PURPOSE_SESSION) -> str | None:
        """Return the account id embedded in a valid token, else None."""
        if not token:
            return None
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                options={"require": ["sub", "exp", "iat"]},
            )
        except jwt.ExpiredSignatureError:
            logger.info("Token rejected", extra={"reason": "expired", "purpose": purpose})
            return None
        except jwt.PyJWTError as e:
            logger.info(
                "Token rejected",
                extra={"reason": type(e).__name__, "purpose": purpose},
            )
            return None
        if payload.get("purpose") != purpose:
            logger.info("Token rejected", extra={"reason": "purpose_mismatch", "purpose": purpose})
            return None
        sub = payload.get("sub")
        if not isinstance(sub, str) or not sub:
            logger.info("Token rejected", extra={"reason": "invalid_subject", "purpose": purpose})
            return None
        return sub


@lru_cache
def get_token_codec() -> TokenCodec:
    """Process-wide codec; the signing key is read once from settings."""
    settings = get_settings()
    return TokenCodec(
        secret=settings.JWT_SECRET.get_secret_value(),
        algorithm=settings.JWT_ALGORITHM,
        mfa_ttl=timedelta(minutes=settings.MFA_CHALLENGE_TTL_MINUTES),
    )
