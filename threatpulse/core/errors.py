"""Authentication error taxonomy shared by the API, the services and the client.

Messages are deliberately generic: callers show them to users as-is, so they
never say which credential or which second-factor check failed.
"""


class AuthError(Exception):
    """Base class for every identity-related failure."""

    default_message = "Authentication error."

    def __init__(self, message: str | None = None, cause: Exception | None = None) -> None:
        self.message = message or self.default_message
        self.cause = cause
        super().__init__(self.message)


class InvalidInput(AuthError):
    """Missing or malformed fields; detected locally, before any network call."""

    default_message = "Email and password are required."


class AccountExists(InvalidInput):
    """Sign-up or user creation with an email that is already registered."""

    default_message = "An account with this email already exists."


class AuthenticationFailed(AuthError):
    """Bad credentials. Same kind for unknown email and wrong password."""

    default_message = "Invalid email or password."


class ProfileMissing(AuthError):
    """Credentials are valid but the profile or role cannot be resolved."""

    default_message = "User profile not found."


class MFAInvalidCode(AuthError):
    """Second-factor code rejected (TOTP and recovery failures look identical)."""

    default_message = "Invalid or already used verification code."


class MFAAlreadyEnabled(AuthError):
    """Enrollment requested while MFA is already active for the account."""

    default_message = "Two-factor authentication is already enabled."


class ServiceUnavailable(AuthError):
    """Transport failure or server error while talking to the credential store."""

    default_message = "Authentication service is unavailable. Try again later."


class SessionExpired(AuthError):
    """Persisted session is expired or revoked; triggers silent re-authentication."""

    default_message = "Session expired."
