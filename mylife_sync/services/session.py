"""mylife cloud session management.

Caches the login token and refreshes it shortly before expiry. Concurrent
callers that find no valid session share a single login.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Protocol

from mylife_sync.core.errors import AuthError
from mylife_sync.logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Session:
    """An authenticated mylife cloud session."""

    token: str = field(repr=False)
    issued_at: datetime
    expires_at: datetime

    def expires_within(self, margin: timedelta, now: datetime | None = None) -> bool:
        now = now or datetime.now(UTC)
        return self.expires_at - margin <= now


class LoginClient(Protocol):
    """Anything that can exchange credentials for a session."""

    async def login(self, username: str, password: str) -> Session: ...


class SessionProvider:
    """Hands out valid sessions, logging in only when needed.

    A rejected login is remembered: later calls fail immediately without
    contacting the server until reset_credentials() supplies new ones.
    """

    def __init__(
        self,
        client: LoginClient,
        username: str,
        password: str,
        refresh_margin: timedelta = timedelta(minutes=5),
    ):
        self._client = client
        self._username = username
        self._password = password
        self._refresh_margin = refresh_margin
        self._session: Session | None = None
        self._rejected: AuthError | None = None
        self._lock = asyncio.Lock()
        self.refresh_in_progress = False

    @property
    def current_session(self) -> Session | None:
        return self._session

    @property
    def credentials_rejected(self) -> bool:
        return self._rejected is not None

    def _usable(self, session: Session | None) -> bool:
        return session is not None and not session.expires_within(self._refresh_margin)

    async def get_valid_session(self) -> Session:
        """Return a cached session or log in.

        Raises:
            AuthError: retryable=False if the credentials were rejected,
                retryable=True if the login endpoint could not be reached
        """
        if self._rejected is not None:
            raise AuthError(
                "mylife credentials were rejected; update them to resume sync",
                retryable=False,
            )
        if self._usable(self._session):
            return self._session

        async with self._lock:
            # Another caller may have logged in while we waited
            if self._rejected is not None:
                raise AuthError(
                    "mylife credentials were rejected; update them to resume sync",
                    retryable=False,
                )
            if self._usable(self._session):
                return self._session

            self.refresh_in_progress = True
            try:
                session = await self._client.login(self._username, self._password)
            except AuthError as e:
                if not e.retryable:
                    self._rejected = e
                    logger.error(
                        "mylife login rejected",
                        stage=e.stage,
                        username=self._username,
                    )
                else:
                    logger.warning(
                        "mylife login failed",
                        stage=e.stage,
                        error=str(e),
                    )
                raise
            finally:
                self.refresh_in_progress = False

            self._session = session
            logger.info(
                "mylife session established",
                expires_at=session.expires_at.isoformat(),
            )
            return session

    def invalidate(self, token: str) -> None:
        """Drop the cached session if it still holds the given token."""
        if self._session is not None and self._session.token == token:
            self._session = None
            logger.info("mylife session invalidated")

    def reset_credentials(self, username: str, password: str) -> None:
        """Replace the credentials and clear any remembered rejection."""
        self._username = username
        self._password = password
        self._session = None
        self._rejected = None
        logger.info("mylife credentials updated", username=username)
