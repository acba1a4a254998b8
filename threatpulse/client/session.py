"""
Authentication session manager: the single owner of "who is signed in".

States: UNAUTHENTICATED -> AUTHENTICATING -> (MFA_PENDING) -> AUTHENTICATED -> UNAUTHENTICATED.

Construct one manager per client process and pass it to whatever needs the
current identity or permissions. All writes to the identity slot go through
`_commit_*` under one asyncio lock, and every network-bound transition records
the generation it started in: a result that arrives after a newer sign-in,
sign-out or restoration started is discarded instead of committed.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from threatpulse.client.api import AuthApiClient
from threatpulse.client.state import (
    AUTH_KEYS,
    AUTH_SESSION_KEY,
    AUTH_USER_KEY,
    MFA_KEY,
    LocalStateStore,
)
from threatpulse.core.errors import (
    AuthenticationFailed,
    AuthError,
    InvalidInput,
    MFAInvalidCode,
    ProfileMissing,
    ServiceUnavailable,
    SessionExpired,
)
from threatpulse.schemas.auth import AuthResponse, Identity, MFAChallengeResponse, PermissionSet
from threatpulse.schemas.mfa import EnrollmentStartResponse
from threatpulse.services.mfa import is_totp_format, normalize_code
from threatpulse.services.permissions import resolve_permissions

if TYPE_CHECKING:
    from threatpulse.core.config import Settings

logger = logging.getLogger(__name__)


class AuthState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    MFA_PENDING = "mfa_pending"
    AUTHENTICATED = "authenticated"


AuthListener = Callable[[AuthState, Identity | None], None]


@dataclass(frozen=True)
class _PendingMFA:
    mfa_token: str
    email: str
    generation: int


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _parse_expiry(value: Any) -> datetime | None:
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


class AuthSessionManager:
    """Session context for one client process. See module docstring."""

    def __init__(
        self,
        api: AuthApiClient,
        store: LocalStateStore,
        clock: Callable[[], datetime] = _utcnow,
        poll_interval: float = 1.0,
    ) -> None:
        self._api = api
        self._store = store
        self._clock = clock
        self._poll_interval = poll_interval
        self._state = AuthState.UNAUTHENTICATED
        self._identity: Identity | None = None
        self._token: str | None = None
        self._expires_at: datetime | None = None
        self._pending: _PendingMFA | None = None
        self._generation = 0
        # Generation of the sign-in or sign-up this process started itself, if any.
        self._interactive_generation: int | None = None
        self._lock = asyncio.Lock()
        self._listeners: list[AuthListener] = []
        self._tasks: set[asyncio.Task[Any]] = set()
        self._unsubscribe_store = store.subscribe(self._on_storage_change)

    @classmethod
    def from_settings(cls, settings: Settings) -> AuthSessionManager:
        return cls(
            AuthApiClient.from_settings(settings),
            LocalStateStore(settings.CLIENT_STATE_PATH),
            poll_interval=settings.STATE_POLL_INTERVAL_SEC,
        )

    @property
    def state(self) -> AuthState:
        return self._state

    @property
    def identity(self) -> Identity | None:
        return self._identity if self._state is AuthState.AUTHENTICATED else None

    @property
    def token(self) -> str | None:
        return self._token if self._state is AuthState.AUTHENTICATED else None

    @property
    def pending_mfa_email(self) -> str | None:
        return self._pending.email if self._state is AuthState.MFA_PENDING and self._pending else None

    @property
    def is_authenticated(self) -> bool:
        return self._state is AuthState.AUTHENTICATED

    @property
    def permissions(self) -> PermissionSet:
        """Resolved on every access from the current identity; never cached."""
        identity = self.identity
        return resolve_permissions(identity.role if identity is not None else None)

    @property
    def generation(self) -> int:
        return self._generation

    def subscribe(self, listener: AuthListener) -> Callable[[], None]:
        """listener(state, identity) runs after every committed transition."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def sign_in(self, email: str, password: str) -> AuthState:
        """
        Password step. Returns AUTHENTICATED, or MFA_PENDING when a second
        factor is required. Raises InvalidInput, AuthenticationFailed,
        ProfileMissing or ServiceUnavailable; none of them authenticates.
        """
        email, password = _require(email, "email"), _require(password, "password")
        self._drop_current_session()
        generation = self._start(AuthState.AUTHENTICATING)
        self._interactive_generation = generation
        try:
            result = await self._api.sign_in(email, password)
        except AuthError:
            await self._commit_unauthenticated(generation, clear_store=False)
            raise
        if isinstance(result, MFAChallengeResponse):
            await self._commit_mfa_pending(generation, result, email)
            return self._state
        await self._commit_authenticated(generation, result, mfa_enabled=False)
        return self._state

    async def sign_up(self, email: str, password: str, name: str) -> AuthState:
        """Register and sign in. AccountExists (an InvalidInput) if the email is taken."""
        email = _require(email, "email")
        password = _require(password, "password")
        name = _require(name, "name")
        self._drop_current_session()
        generation = self._start(AuthState.AUTHENTICATING)
        self._interactive_generation = generation
        try:
            result = await self._api.sign_up(email, password, name.strip())
        except AuthError:
            await self._commit_unauthenticated(generation, clear_store=False)
            raise
        await self._commit_authenticated(generation, result, mfa_enabled=False)
        return self._state

    async def complete_mfa(self, code: str, is_recovery: bool = False) -> AuthState:
        """
        Second step. On a rejected code the manager stays MFA_PENDING and raises
        MFAInvalidCode; the message is the same for TOTP and recovery codes.
        """
        pending = self._pending
        if self._state is not AuthState.MFA_PENDING or pending is None:
            raise InvalidInput("No sign-in is waiting for a verification code.")
        if is_recovery:
            if not normalize_code(code):
                raise MFAInvalidCode()
        elif not is_totp_format(code):
            raise MFAInvalidCode()
        try:
            result = await self._api.verify_mfa(pending.mfa_token, normalize_code(code), is_recovery)
        except ProfileMissing:
            await self._commit_unauthenticated(pending.generation, clear_store=False)
            raise
        await self._commit_authenticated(pending.generation, result, mfa_enabled=True)
        return self._state

    async def cancel_mfa(self) -> None:
        """Abandon a pending second factor; nothing was persisted, nothing to revoke."""
        if self._state is not AuthState.MFA_PENDING:
            return
        generation = self._start(AuthState.UNAUTHENTICATED)
        await self._commit_unauthenticated(generation, clear_store=False)

    async def restore_session(self) -> AuthState:
        """
        Re-enter AUTHENTICATED from persisted state, re-fetching the identity
        (roles can change between visits). Missing, corrupt, expired or revoked
        sessions end in UNAUTHENTICATED without raising.
        """
        generation = self._start(AuthState.AUTHENTICATING)
        raw = self._store.get(AUTH_SESSION_KEY)
        token = raw.get("access_token") if isinstance(raw, dict) else None
        expires_at = _parse_expiry(raw.get("expires_at")) if isinstance(raw, dict) else None
        if not isinstance(token, str) or not token or expires_at is None:
            await self._commit_unauthenticated(generation, clear_store=raw is not None)
            return self._state
        if expires_at <= self._clock():
            logger.info("Persisted session expired", extra={"expired_at": expires_at.isoformat()})
            await self._commit_unauthenticated(generation, clear_store=True)
            return self._state
        try:
            identity = await self._api.fetch_identity(token)
        except (SessionExpired, AuthenticationFailed, ProfileMissing) as e:
            logger.info("Persisted session rejected", extra={"reason": type(e).__name__})
            await self._commit_unauthenticated(generation, clear_store=True)
            return self._state
        except ServiceUnavailable:
            # Keep the token: the server may accept it once it is reachable again.
            logger.warning("Session restore skipped; credential store unreachable")
            await self._commit_unauthenticated(generation, clear_store=False)
            return self._state
        await self._commit_identity(generation, token, expires_at, identity)
        return self._state

    async def sign_out(self) -> None:
        """
        Clear local identity and persisted session immediately, then revoke the
        server session in the background. Never raises for network failures.
        """
        token = self._token
        generation = self._start(AuthState.UNAUTHENTICATED)
        await self._commit_unauthenticated(generation, clear_store=True)
        if token:
            self._spawn(self._revoke(token))

    async def begin_mfa_enrollment(self) -> EnrollmentStartResponse:
        """Fresh secret + otpauth URI; restarting discards any previous attempt."""
        return await self._authorized(self._api.begin_enrollment)

    async def verify_mfa_enrollment(self, code: str) -> int:
        if not is_totp_format(code):
            raise InvalidInput("Enter the 6-digit code from your authenticator app.")
        verified = await self._authorized(self._api.verify_enrollment, normalize_code(code))
        return verified.backup_code_count

    async def complete_mfa_enrollment(self) -> list[str]:
        """Enable MFA; the returned recovery codes are not retrievable later."""
        completed = await self._authorized(self._api.complete_enrollment)
        self._store.set(MFA_KEY, {"enabled": True})
        return completed.backup_codes

    async def disable_mfa(self) -> None:
        await self._authorized(self._api.disable_mfa)
        self._store.set(MFA_KEY, {"enabled": False})

    async def watch_storage(self, stop: asyncio.Event | None = None) -> None:
        """Follow sign-ins and sign-outs made by other processes sharing the state file."""
        await self._store.watch(self._poll_interval, stop)

    async def join_background(self) -> None:
        """Wait for background revocations and restorations started so far."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        """Wait for background work and detach from the state store."""
        self._unsubscribe_store()
        await self.join_background()

    def _drop_current_session(self) -> None:
        """
        A new sign-in supersedes whatever session this process holds or has
        persisted: clear it from the state file and revoke it in the background,
        so a failed or abandoned attempt cannot leave it restorable.
        """
        raw = self._store.get(AUTH_SESSION_KEY)
        stored = raw.get("access_token") if isinstance(raw, dict) else None
        tokens = {t for t in (self._token, stored) if isinstance(t, str) and t}
        self._store.remove(AUTH_SESSION_KEY, AUTH_USER_KEY, MFA_KEY)
        for token in tokens:
            self._spawn(self._revoke(token))

    def _start(self, state: AuthState) -> int:
        self._generation += 1
        self._pending = None
        if state is not AuthState.UNAUTHENTICATED:
            self._state = state
            self._identity = None
            self._token = None
            self._expires_at = None
        return self._generation

    async def _commit_authenticated(
        self, generation: int, result: AuthResponse, mfa_enabled: bool
    ) -> None:
        committed = await self._commit_identity(
            generation,
            result.session.access_token,
            result.session.expires_at,
            result.user,
            mfa_enabled=mfa_enabled,
        )
        if not committed:
            # A newer transition won; this freshly issued session has no owner.
            self._spawn(self._revoke(result.session.access_token))

    async def _commit_identity(
        self,
        generation: int,
        token: str,
        expires_at: datetime,
        identity: Identity,
        mfa_enabled: bool | None = None,
    ) -> bool:
        async with self._lock:
            if generation != self._generation:
                logger.info(
                    "Discarding stale identity resolution",
                    extra={"generation": generation, "current_generation": self._generation},
                )
                return False
            self._state = AuthState.AUTHENTICATED
            self._identity = identity
            self._token = token
            self._expires_at = expires_at
            self._pending = None
            self._store.set(
                AUTH_SESSION_KEY,
                {"access_token": token, "expires_at": expires_at.isoformat()},
            )
            self._store.set(AUTH_USER_KEY, identity.model_dump(mode="json", by_alias=True))
            if mfa_enabled is not None:
                self._store.set(MFA_KEY, {"enabled": mfa_enabled})
        logger.info("Authenticated", extra={"account_id": identity.id, "role": identity.role})
        self._notify()
        return True

    async def _commit_mfa_pending(
        self, generation: int, challenge: MFAChallengeResponse, email: str
    ) -> None:
        async with self._lock:
            if generation != self._generation:
                logger.info("Discarding stale MFA challenge", extra={"generation": generation})
                return
            self._state = AuthState.MFA_PENDING
            self._pending = _PendingMFA(challenge.mfa_token, email, generation)
        self._notify()

    async def _commit_unauthenticated(self, generation: int, clear_store: bool) -> None:
        async with self._lock:
            if generation != self._generation:
                return
            self._state = AuthState.UNAUTHENTICATED
            self._identity = None
            self._token = None
            self._expires_at = None
            self._pending = None
            if clear_store:
                self._store.remove(AUTH_SESSION_KEY, AUTH_USER_KEY, MFA_KEY)
        self._notify()

    async def _authorized(self, call: Callable[..., Any], *args: Any) -> Any:
        token = self.token
        if token is None:
            raise SessionExpired()
        try:
            return await call(token, *args)
        except SessionExpired:
            generation = self._start(AuthState.UNAUTHENTICATED)
            await self._commit_unauthenticated(generation, clear_store=True)
            raise

    async def _revoke(self, token: str) -> None:
        try:
            await self._api.sign_out(token)
        except AuthError as e:
            logger.warning("Server-side sign-out failed", extra={"error": type(e).__name__})

    def _spawn(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _on_storage_change(self, keys: frozenset[str]) -> None:
        if not keys & AUTH_KEYS:
            return
        if self._state is AuthState.MFA_PENDING or (
            self._state is AuthState.AUTHENTICATING
            and self._interactive_generation == self._generation
        ):
            # The local sign-in will overwrite the shared state when it commits.
            logger.info("Ignoring external auth change during local sign-in", extra={"keys": sorted(keys)})
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("State change seen outside an event loop; ignoring")
            return
        logger.info("Auth state changed by another process", extra={"keys": sorted(keys)})
        self._spawn(self.restore_session())

    def _notify(self) -> None:
        state, identity = self._state, self.identity
        for listener in list(self._listeners):
            try:
                listener(state, identity)
            except Exception:
                logger.exception("Auth listener failed")


def _require(value: str | None, field: str) -> str:
    if value is None or not value.strip():
        raise InvalidInput(f"{field.capitalize()} is required.")
    return value.strip() if field != "password" else value
