"""
Signed-in identity for the remote backend (GoTrue-compatible auth API).

Holds the current session, renews the access token from the refresh token
shortly before it expires, and persists the session as JSON so a restart
stays signed in.
"""

import logging
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional

import httpx
from pydantic import AwareDatetime, BaseModel, ValidationError

from protee.storage.database import utcnow
from protee.sync.errors import AuthorizationError, RemoteRejectedError, SyncError
from protee.sync.remote import send

logger = logging.getLogger(__name__)

REFRESH_LEEWAY = timedelta(seconds=60)


class AuthSession(BaseModel):
    user_id: str
    email: Optional[str] = None
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[AwareDatetime] = None

    def expires_soon(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at - REFRESH_LEEWAY

    @classmethod
    def from_token_response(cls, body: dict, now: datetime) -> "AuthSession":
        user = body.get("user") or {}
        expires_at = None
        if body.get("expires_at"):
            expires_at = datetime.fromtimestamp(int(body["expires_at"]), tz=timezone.utc)
        elif body.get("expires_in"):
            expires_at = now + timedelta(seconds=int(body["expires_in"]))
        return cls(
            user_id=user["id"],
            email=user.get("email"),
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token"),
            expires_at=expires_at,
        )


class AuthManager:
    """Current session for the remote backend."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        session_path: Optional[Path] = None,
        http: Optional[httpx.AsyncClient] = None,
        timeout: float = 15.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._session_path = Path(session_path) if session_path else None
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=timeout)
        self._clock = clock
        self._lock = threading.Lock()
        self._session: Optional[AuthSession] = self._load()

    @property
    def session(self) -> Optional[AuthSession]:
        return self._session

    @property
    def is_signed_in(self) -> bool:
        return self._session is not None

    # ── Sign in / out ───────────────────────────────────────────────

    async def sign_in(self, email: str, password: str) -> AuthSession:
        try:
            response = await send(
                self._http,
                "POST",
                f"{self._base_url}/auth/v1/token",
                params={"grant_type": "password"},
                json={"email": email, "password": password},
                headers={"apikey": self._api_key},
            )
        except RemoteRejectedError as e:
            raise AuthorizationError(f"Sign in failed: {e}") from e
        session = self._parse(response)
        self._set_session(session)
        logger.info("Signed in as %s (%s)", session.email, session.user_id)
        return session

    async def sign_out(self) -> None:
        session = self._session
        if session is None:
            return
        try:
            await send(
                self._http,
                "POST",
                f"{self._base_url}/auth/v1/logout",
                headers={"apikey": self._api_key, "Authorization": f"Bearer {session.access_token}"},
            )
        except SyncError as e:
            logger.warning("Remote sign-out failed, clearing local session anyway: %s", e)
        self._set_session(None)
        logger.info("Signed out %s", session.user_id)

    # ── Session access ──────────────────────────────────────────────

    async def ensure_session(self) -> AuthSession:
        """Current session, refreshed if close to expiry. Raises when signed out."""
        session = self._session
        if session is None:
            raise AuthorizationError("Not signed in")
        if not session.expires_soon(self._clock()):
            return session
        if not session.refresh_token:
            self._set_session(None)
            raise AuthorizationError("Session expired")

        try:
            response = await send(
                self._http,
                "POST",
                f"{self._base_url}/auth/v1/token",
                params={"grant_type": "refresh_token"},
                json={"refresh_token": session.refresh_token},
                headers={"apikey": self._api_key},
            )
        except (AuthorizationError, RemoteRejectedError) as e:
            self._set_session(None)
            raise AuthorizationError("Session expired") from e
        refreshed = self._parse(response)
        self._set_session(refreshed)
        logger.info("Refreshed session for %s", refreshed.user_id)
        return refreshed

    # ── Persistence ─────────────────────────────────────────────────

    def _parse(self, response: httpx.Response) -> AuthSession:
        try:
            return AuthSession.from_token_response(response.json(), self._clock())
        except (ValueError, KeyError, TypeError) as e:
            raise AuthorizationError(f"Unexpected auth response: {e}") from e

    def _set_session(self, session: Optional[AuthSession]) -> None:
        with self._lock:
            self._session = session
            if self._session_path is None:
                return
            if session is None:
                self._session_path.unlink(missing_ok=True)
            else:
                self._session_path.parent.mkdir(parents=True, exist_ok=True)
                self._session_path.write_text(session.model_dump_json(), encoding="utf-8")

    def _load(self) -> Optional[AuthSession]:
        if self._session_path is None or not self._session_path.exists():
            return None
        try:
            return AuthSession.model_validate_json(self._session_path.read_text(encoding="utf-8"))
        except ValidationError:
            logger.warning("Ignoring unreadable session file %s", self._session_path)
            return None

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()
