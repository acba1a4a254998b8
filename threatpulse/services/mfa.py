"""
Second factor: TOTP enrollment and verification with single-use recovery codes.

TOTP follows RFC 6238 (HMAC-SHA1, 30 second step, 6 digits). Codes are always
checked server-side against the stored secret; a syntactically valid code is
never accepted on format alone.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import secrets
import string
import struct
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING
from urllib.parse import quote, urlencode

from sqlalchemy.orm import Session

from threatpulse.core.errors import InvalidInput, MFAAlreadyEnabled, MFAInvalidCode
from threatpulse.models import Account, MFAConfig

if TYPE_CHECKING:
    from threatpulse.core.config import Settings

logger = logging.getLogger(__name__)

BASE32_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ234567"
SECRET_LENGTH = 32
BACKUP_CODE_COUNT = 10
BACKUP_CODE_LENGTH = 8
BACKUP_CODE_ALPHABET = string.ascii_uppercase + string.digits
TOTP_DIGITS = 6
TOTP_INTERVAL_SEC = 30

# Serializes recovery-code and TOTP-step consumption inside one process; the row lock covers other processes.
_consume_lock = threading.Lock()


@dataclass(frozen=True)
class EnrollmentStart:
    secret: str
    provisioning_uri: str


def generate_secret(length: int = SECRET_LENGTH) -> str:
    """Random base32 shared secret. Every call returns a fresh value."""
    return "".join(secrets.choice(BASE32_ALPHABET) for _ in range(length))


def provisioning_uri(email: str, secret: str, issuer: str) -> str:
    """otpauth:// URI understood by authenticator apps (rendered as a QR code)."""
    label = quote(f"{issuer}:{email}", safe="@:")
    query = urlencode({"secret": secret, "issuer": issuer}, quote_via=quote)
    return f"otpauth://totp/{label}?{query}"


def generate_backup_codes(
    count: int = BACKUP_CODE_COUNT, length: int = BACKUP_CODE_LENGTH
) -> list[str]:
    """count distinct upper-case alphanumeric recovery codes."""
    codes: list[str] = []
    while len(codes) < count:
        code = "".join(secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(length))
        if code not in codes:
            codes.append(code)
    return codes


def normalize_code(code: str | None) -> str:
    """Trim, drop spaces and dashes, upper-case."""
    if not code:
        return ""
    return code.strip().replace(" ", "").replace("-", "").upper()


def is_totp_format(code: str | None) -> bool:
    """True for exactly six ASCII digits (after normalization)."""
    normalized = normalize_code(code)
    return len(normalized) == TOTP_DIGITS and normalized.isascii() and normalized.isdigit()


def hash_backup_code(code: str) -> str:
    return hashlib.sha256(normalize_code(code).encode("utf-8")).hexdigest()


def generate_totp(
    secret: str,
    timestamp: float,
    interval: int = TOTP_INTERVAL_SEC,
    digits: int = TOTP_DIGITS,
) -> str:
    """
    RFC 6238 code for the time step containing timestamp.

    Raises ValueError if the secret is not valid base32.
    """
    normalized = secret.strip().replace(" ", "").upper()
    padded = normalized + "=" * ((8 - len(normalized) % 8) % 8)
    try:
        key = base64.b32decode(padded, casefold=True)
    except (ValueError, TypeError) as e:
        raise ValueError("TOTP secret is not valid base32") from e
    counter = struct.pack(">Q", int(timestamp // interval))
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    binary = struct.unpack(">I", digest[offset : offset + 4])[0] & 0x7FFFFFFF
    return str(binary % (10**digits)).zfill(digits)


def match_totp_step(
    secret: str,
    code: str,
    window: int = 1,
    now: float | None = None,
) -> int | None:
    """
    Time step (counter) whose code equals code, searching the current step and
    up to window adjacent steps either side (clock skew). None if nothing matches.
    """
    if not is_totp_format(code):
        return None
    candidate = normalize_code(code)
    timestamp = time.time() if now is None else now
    current = int(timestamp // TOTP_INTERVAL_SEC)
    for offset in range(-window, window + 1):
        step = current + offset
        try:
            expected = generate_totp(secret, step * TOTP_INTERVAL_SEC)
        except ValueError:
            logger.warning("Stored TOTP secret is invalid")
            return None
        if hmac.compare_digest(expected, candidate):
            return step
    return None


def verify_totp(
    secret: str,
    code: str,
    window: int = 1,
    now: float | None = None,
) -> bool:
    """Accept the current step and up to window adjacent steps either side (clock skew)."""
    return match_totp_step(secret, code, window=window, now=now) is not None


def get_config(db: Session, account_id: str, for_update: bool = False) -> MFAConfig | None:
    query = db.query(MFAConfig).filter(MFAConfig.account_id == account_id)
    if for_update:
        query = query.with_for_update()
    return query.first()


def is_enabled(db: Session, account_id: str) -> bool:
    config = get_config(db, account_id)
    return bool(config is not None and config.enabled and config.secret)


def begin_enrollment(db: Session, account: Account, settings: Settings) -> EnrollmentStart:
    """
    Start (or restart) enrollment with a brand-new secret.

    Any uncompleted enrollment is discarded. Raises MFAAlreadyEnabled when MFA
    is active; disable it first to re-enroll.
    """
    config = get_config(db, account.id, for_update=True)
    if config is not None and config.enabled:
        db.rollback()
        raise MFAAlreadyEnabled()
    if config is None:
        config = MFAConfig(account_id=account.id, enabled=False, backup_code_hashes=[])
        db.add(config)
    secret = generate_secret()
    config.pending_secret = secret
    config.pending_backup_codes = None
    db.commit()
    logger.info("MFA enrollment started", extra={"account_id": account.id})
    return EnrollmentStart(
        secret=secret,
        provisioning_uri=provisioning_uri(account.email, secret, settings.MFA_ISSUER),
    )


def verify_enrollment_code(
    db: Session,
    account: Account,
    code: str,
    settings: Settings,
    now: float | None = None,
) -> int:
    """
    Check the first code from the authenticator and prepare recovery codes.

    Returns the number of recovery codes generated. Raises InvalidInput for a
    malformed code or when no enrollment is in progress, MFAInvalidCode when
    the code does not match the pending secret.
    """
    if not is_totp_format(code):
        raise InvalidInput("Enter the 6-digit code from your authenticator app.")
    config = get_config(db, account.id, for_update=True)
    if config is None or config.enabled or not config.pending_secret:
        db.rollback()
        raise InvalidInput("No MFA enrollment in progress.")
    if not verify_totp(config.pending_secret, code, window=settings.MFA_TOTP_WINDOW, now=now):
        db.rollback()
        raise MFAInvalidCode()
    codes = generate_backup_codes()
    config.pending_backup_codes = codes
    db.commit()
    return len(codes)


def complete_enrollment(db: Session, account: Account) -> list[str]:
    """
    Enable MFA and return the recovery codes. This is the only time the
    plaintext codes leave the server; afterwards only their hashes remain.
    """
    config = get_config(db, account.id, for_update=True)
    if config is None or config.enabled or not config.pending_secret or not config.pending_backup_codes:
        db.rollback()
        raise InvalidInput("Verify a code from your authenticator app first.")
    codes = list(config.pending_backup_codes)
    config.secret = config.pending_secret
    config.backup_code_hashes = [hash_backup_code(c) for c in codes]
    config.enabled = True
    config.pending_secret = None
    config.pending_backup_codes = None
    db.commit()
    logger.info("MFA enabled", extra={"account_id": account.id})
    return codes


def verify_login(
    db: Session,
    account_id: str,
    code: str,
    is_recovery: bool,
    settings: Settings,
    now: float | None = None,
) -> None:
    """
    Second step of sign-in. Returns on success, raises MFAInvalidCode otherwise.

    A recovery code is removed in the same transaction that matched it, so it
    verifies at most once. A TOTP code is accepted only for a time step later
    than the last accepted one, so a code (and the challenge it was sent with)
    cannot be replayed to mint a second session.
    """
    if is_recovery:
        _consume_backup_code(db, account_id, code)
        return
    if not is_totp_format(code):
        raise MFAInvalidCode()
    with _consume_lock:
        config = get_config(db, account_id, for_update=True)
        if config is None or not config.enabled or not config.secret:
            db.rollback()
            raise MFAInvalidCode()
        step = match_totp_step(config.secret, code, window=settings.MFA_TOTP_WINDOW, now=now)
        if step is None:
            db.rollback()
            logger.info("MFA code rejected", extra={"account_id": account_id, "method": "totp"})
            raise MFAInvalidCode()
        if config.last_totp_step is not None and step <= config.last_totp_step:
            db.rollback()
            logger.warning("MFA code replay rejected", extra={"account_id": account_id})
            raise MFAInvalidCode()
        config.last_totp_step = step
        db.commit()


def _consume_backup_code(db: Session, account_id: str, code: str) -> None:
    normalized = normalize_code(code)
    if not normalized:
        raise MFAInvalidCode()
    digest = hash_backup_code(normalized)
    with _consume_lock:
        config = get_config(db, account_id, for_update=True)
        if config is None or not config.enabled:
            db.rollback()
            raise MFAInvalidCode()
        remaining = list(config.backup_code_hashes or [])
        match = next((h for h in remaining if hmac.compare_digest(h, digest)), None)
        if match is None:
            db.rollback()
            logger.info("MFA code rejected", extra={"account_id": account_id, "method": "recovery"})
            raise MFAInvalidCode()
        remaining.remove(match)
        config.backup_code_hashes = remaining
        db.commit()
    logger.warning(
        "Recovery code used",
        extra={"account_id": account_id, "remaining_codes": len(remaining)},
    )


def disable(db: Session, account: Account) -> bool:
    """Remove secret, recovery codes and any pending enrollment. Returns False if nothing was set."""
    config = get_config(db, account.id, for_update=True)
    if config is None:
        db.rollback()
        return False
    db.delete(config)
    db.commit()
    logger.info("MFA disabled", extra={"account_id": account.id})
    return True
