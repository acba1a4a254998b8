"""HTTP client for the credential store API; maps responses onto the auth error taxonomy."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from threatpulse.core.errors import (
    AccountExists,
    AuthenticationFailed,
    AuthError,
    InvalidInput,
    MFAAlreadyEnabled,
    MFAInvalidCode,
    ProfileMissing,
    ServiceUnavailable,
    SessionExpired,
)
from threatpulse.schemas.auth import AuthResponse, Identity, MFAChallengeResponse
from threatpulse.schemas.mfa import (
    EnrollmentCompleteResponse,
    EnrollmentStartResponse,
    EnrollmentVerifiedResponse,
    MFAStatusResponse,
)

if TYPE_CHECKING:
    from threatpulse.core.config import Settings

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class AuthApiClient:
    """
    Thin async wrapper over /auth and /mfa.

    Every transport failure (connect, timeout, protocol) and every 5xx becomes
    ServiceUnavailable; 401 becomes the error class the caller names, so a bad
    password and an unknown email are indistinguishable here too. No retries.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = httpx.Timeout(timeout)
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> AuthApiClient:
        return cls(settings.AUTH_API_BASE_URL, timeout=settings.AUTH_REQUEST_TIMEOUT_SEC)

    async def sign_in(self, email: str, password: str) -> AuthResponse | MFAChallengeResponse:
        data = await self._request(
            "POST",
            "/auth/signin",
            json={"email": email, "password": password},
            unauthorized=AuthenticationFailed,
        )
        if isinstance(data, dict) and data.get("mfaRequired") is True:
            return _parse(MFAChallengeResponse, data)
        return _parse(AuthResponse, data)

    async def sign_up(self, email: str, password: str, name: str) -> AuthResponse:
        data = await self._request(
            "POST",
            "/auth/signup",
            json={"email": email, "password": password, "name": name},
            unauthorized=AuthenticationFailed,
        )
        return _parse(AuthResponse, data)

    async def verify_mfa(self, mfa_token: str, code: str, is_recovery: bool) -> AuthResponse:
        data = await self._request(
            "POST",
            "/auth/mfa/verify",
            json={"mfaToken": mfa_token, "code": code, "isRecovery": is_recovery},
            unauthorized=MFAInvalidCode,
        )
        return _parse(AuthResponse, data)

    async def sign_out(self, token: str) -> None:
        await self._request("POST", "/auth/signout", token=token, unauthorized=SessionExpired)

    async def fetch_identity(self, token: str) -> Identity:
        data = await self._request("GET", "/auth/me", token=token, unauthorized=SessionExpired)
        return _parse(Identity, data)

    async def mfa_status(self, token: str) -> MFAStatusResponse:
        data = await self._request("GET", "/mfa", token=token, unauthorized=SessionExpired)
        return _parse(MFAStatusResponse, data)

    async def begin_enrollment(self, token: str) -> EnrollmentStartResponse:
        data = await self._request("POST", "/mfa/enrollment", token=token, unauthorized=SessionExpired)
        return _parse(EnrollmentStartResponse, data)

    async def verify_enrollment(self, token: str, code: str) -> EnrollmentVerifiedResponse:
        data = await self._request(
            "POST",
            "/mfa/enrollment/verify",
            json={"code": code},
            token=token,
            unauthorized=SessionExpired,
            invalid=MFAInvalidCode,
        )
        return _parse(EnrollmentVerifiedResponse, data)

    async def complete_enrollment(self, token: str) -> EnrollmentCompleteResponse:
        data = await self._request(
            "POST", "/mfa/enrollment/complete", token=token, unauthorized=SessionExpired
        )
        return _parse(EnrollmentCompleteResponse, data)

    async def disable_mfa(self, token: str) -> MFAStatusResponse:
        data = await self._request("DELETE", "/mfa", token=token, unauthorized=SessionExpired)
        return _parse(MFAStatusResponse, data)

    async def _request(
        self,
        method: str,
        path: str,
        unauthorized: type[AuthError],
        json: dict[str, Any] | None = None,
        token: str | None = None,
        invalid: type[AuthError] = InvalidInput,
    ) -> Any:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        url = f"{self._base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.request(method, url, json=json, headers=headers)
        except httpx.HTTPError as e:
            logger.warning(
                "Credential store request failed",
                extra={"path": path, "error": type(e).__name__},
            )
            raise ServiceUnavailable(cause=e) from e
        _raise_for_status(response, path, unauthorized, invalid)
        try:
            return response.json()
        except ValueError as e:
            raise ServiceUnavailable("Unexpected response from authentication service.", cause=e) from e


def _detail(response: httpx.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        return None
    detail = body.get("detail") if isinstance(body, dict) else None
    return detail if isinstance(detail, str) else None


def _raise_for_status(
    response: httpx.Response,
    path: str,
    unauthorized: type[AuthError],
    invalid: type[AuthError] = InvalidInput,
) -> None:
    code = response.status_code
    if code < 400:
        return
    if code == 401:
        raise unauthorized()
    if code == 400:
        raise AccountExists(_detail(response))
    if code == 404:
        raise ProfileMissing()
    if code == 409:
        raise MFAAlreadyEnabled()
    if code == 422:
        detail = _detail(response)
        # The narrower class applies only when the server reported exactly that failure.
        if invalid is not InvalidInput and detail != invalid.default_message:
            raise InvalidInput(detail or "Invalid input.")
        raise invalid(detail or "Invalid input.")
    logger.warning("Credential store returned an error", extra={"path": path, "status_code": code})
    raise ServiceUnavailable()


def _parse(model: type[ModelT], data: Any) -> ModelT:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise ServiceUnavailable("Unexpected response from authentication service.", cause=e) from e
