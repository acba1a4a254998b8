"""Client-side session context: persisted state, API client and the session manager."""

from threatpulse.client.api import AuthApiClient
from threatpulse.client.session import AuthSessionManager, AuthState
from threatpulse.client.state import LocalStateStore

__all__ = ["AuthApiClient", "AuthSessionManager", "AuthState", "LocalStateStore"]
