import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import httpx

from app.core.exceptions import AuthenticationError
from app.db.base_class import utcnow
from app.schemas.crm import CRMSession

logger = logging.getLogger(__name__)


class CRMSessionManager:
    """
        Holds the one authenticated session with the external CRM.

        - `ensure_authenticated()` returns the cached session while it is valid
          and re-authenticates transparently once it has expired.
        - Concurrent callers that need a new session share a single in-flight
          login (single-flight): they all receive its session or its failure.
        - A failed login clears the cached session and raises AuthenticationError.

        One instance is created per process and injected wherever CRM calls are made.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        base_url: str,
        database: str,
        username: str,
        password: str,
        ttl_seconds: int = 3600,
        timeout: float = 10.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._http = http
        self.base_url = base_url.rstrip("/")
        self.database = database
        self.username = username
        self._password = password
        self.ttl = timedelta(seconds=ttl_seconds)
        self.timeout = timeout
        self._clock = clock

        self._session: Optional[CRMSession] = None
        self._lock = asyncio.Lock()
        self._inflight: Optional[asyncio.Future] = None

    @property
    def session(self) -> Optional[CRMSession]:
        return self._session

    def is_session_expired(self) -> bool:
        return self._session is None or self._session.is_expired(self._clock())

    async def ensure_authenticated(self) -> CRMSession:
        session = self._session
        if session is not None and not session.is_expired(self._clock()):
            return session
        logger.debug("CRM session expired or not found, re-authenticating...")
        return await self.authenticate()

    async def authenticate(self) -> CRMSession:
        async with self._lock:
            if self._inflight is None:
                self._inflight = asyncio.ensure_future(self._login())
                self._inflight.add_done_callback(self._clear_inflight)
            inflight = self._inflight
        # A cancelled caller must not cancel the login other callers are waiting on
        return await asyncio.shield(inflight)

    def _clear_inflight(self, future: asyncio.Future) -> None:
        if self._inflight is future:
            self._inflight = None
        if not future.cancelled():
            # Mark the exception as retrieved; every waiter already received it
            future.exception()

    async def _login(self) -> CRMSession:
        logger.info("Authenticating with external CRM at %s (db=%s)", self.base_url, self.database)
        payload = {
            "jsonrpc": "2.0",
            "method": "call",
            "params": {
                "db": self.database,
                "login": self.username,
                "password": self._password,
            },
        }
        try:
            response = await self._http.post(
                f"{self.base_url}/web/session/authenticate",
                json=payload,
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            self.clear()
            logger.error("CRM authentication failed: %s", e)
            raise AuthenticationError(f"CRM authentication failed: {e}") from e

        error = data.get("error") if isinstance(data, dict) else None
        result = data.get("result") if isinstance(data, dict) else None
        if error:
            self.clear()
            message = (error.get("data") or {}).get("message") or error.get("message") or "unknown error"
            logger.error("CRM authentication rejected: %s", message)
            raise AuthenticationError(f"CRM authentication failed: {message}")

        user_id = (result or {}).get("uid")
        session_id = (result or {}).get("session_id") or response.cookies.get("session_id")
        if not user_id or not session_id:
            self.clear()
            raise AuthenticationError("CRM authentication failed: no user id returned")

        self._session = CRMSession(
            session_id=session_id,
            user_id=user_id,
            expires_at=self._clock() + self.ttl,
        )
        logger.info("CRM authentication successful (user id %s)", user_id)
        return self._session

    def rpc_credentials(self, session: CRMSession) -> List[Any]:
        """Leading `execute_kw` arguments: database, user id and password."""
        return [self.database, session.user_id, self._password]

    def invalidate(self, session: Optional[CRMSession] = None) -> None:
        """Drop the cached session (if it is still the given one) so the next call logs in again."""
        if session is None or self._session is session:
            self._session = None

    def clear(self) -> None:
        self._session = None

    def get_status(self) -> Dict[str, Any]:
        session = self._session
        return {
            "authenticated": session is not None,
            "user_id": session.user_id if session else None,
            "expires_at": session.expires_at if session else None,
            "is_expired": self.is_session_expired(),
        }
