"""Authentication session for the remote store.

``AuthService`` holds the signed-in user's session. The backend selector
asks it ``is_authenticated`` on every call; the remote backend asks it for
the bearer token and user id on every request. Listeners registered with
``on_change`` hear ``signed_in`` and ``signed_out`` events.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx

from mealsync.core.errors import AuthenticationError, ConfigError, NetworkError, RequestTimeout
from mealsync.core.logging import get_logger
from mealsync.core.settings import MealsyncSettings

log = get_logger(__name__)

AuthListener = Callable[[str, "AuthSession | None"], None]


@dataclass(frozen=True)
class AuthSession:
    """A signed-in user's access token."""

    access_token: str
    user_id: str
    email: str | None = None
    refresh_token: str | None = None
    expires_at: float | None = None  # epoch seconds

    def expired(self, now: float | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now if now is not None else time.time()) >= self.expires_at

    @classmethod
    def from_token_response(cls, body: dict[str, Any], now: float | None = None) -> AuthSession:
        user = body.get("user") or {}
        expires_in = body.get("expires_in")
        expires_at = body.get("expires_at")
        if expires_at is None and expires_in is not None:
            expires_at = (now if now is not None else time.time()) + float(expires_in)
        return cls(
            access_token=body["access_token"],
            user_id=str(user["id"]),
            email=user.get("email"),
            refresh_token=body.get("refresh_token"),
            expires_at=expires_at,
        )


class AuthService:
    """Holds the current session and talks to the remote auth endpoint."""

    def __init__(
        self,
        settings: MealsyncSettings,
        *,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._settings = settings
        self._client = client
        self._clock = clock
        self._session: AuthSession | None = None
        self._listeners: list[AuthListener] = []

    # ------------------------------------------------------------------
    # Session state
    # ------------------------------------------------------------------

    @property
    def session(self) -> AuthSession | None:
        return self._session

    @property
    def is_authenticated(self) -> bool:
        session = self._session
        return session is not None and not session.expired(self._clock())

    @property
    def user_id(self) -> str | None:
        return self._session.user_id if self.is_authenticated else None

    def require_session(self) -> AuthSession:
        """The live session, or ``AuthenticationError`` when signed out or expired."""
        if not self.is_authenticated:
            raise AuthenticationError("User not authenticated")
        return self._session

    def set_session(self, session: AuthSession | None) -> None:
        self._session = session
        self._notify("signed_in" if session is not None else "signed_out", session)

    # ------------------------------------------------------------------
    # Remote calls
    # ------------------------------------------------------------------

    async def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        if not self._settings.remote_configured:
            raise ConfigError("Remote store is not configured")
        url = f"{self._settings.remote_url}/auth/v1/token"
        try:
            response = await self._http().post(
                url,
                params={"grant_type": "password"},
                json={"email": email, "password": password},
                headers={"apikey": self._settings.remote_anon_key},
            )
        except httpx.TimeoutException as e:
            raise RequestTimeout("Sign-in timed out", cause=e) from e
        except httpx.TransportError as e:
            raise NetworkError(f"Sign-in failed: {e}", cause=e) from e

        if response.status_code >= 400:
            raise AuthenticationError("Invalid login credentials").with_context(
                url=url, http_status=response.status_code,
            )
        session = AuthSession.from_token_response(response.json(), self._clock())
        log.info("signed_in", user_id=session.user_id)
        self.set_session(session)
        return session

    async def sign_out(self) -> None:
        """Drop the session locally, then tell the server (best effort)."""
        session = self._session
        if session is None:
            return
        self.set_session(None)
        if not self._settings.remote_configured:
            return
        try:
            await self._http().post(
                f"{self._settings.remote_url}/auth/v1/logout",
                headers={
                    "apikey": self._settings.remote_anon_key,
                    "Authorization": f"Bearer {session.access_token}",
                },
            )
        except httpx.HTTPError as e:
            log.warning("sign_out_request_failed", error=str(e))
        log.info("signed_out", user_id=session.user_id)

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def on_change(self, listener: AuthListener) -> Callable[[], None]:
        """Register ``listener(event, session)``; returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, event: str, session: AuthSession | None) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, session)
            except Exception as e:
                log.warning("auth_listener_error", auth_event=event, error=str(e))

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._settings.remote_timeout)
        return self._client
