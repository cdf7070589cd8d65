from __future__ import annotations

import asyncio
import base64
import enum
import hashlib
import logging
from typing import Awaitable, Callable

from .errors import AuthError, UpstreamError
from .session import Credential
from .upstream import UpstreamClient

logger = logging.getLogger(__name__)

AUTH_PATH = "/auth"
PROBE_PATH = "/data/doc"


class AuthState(enum.Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"


def hash_password(secret: str, email: str) -> str:
    """Return the password digest iRacing expects: base64(sha256(secret + email.lower()))."""
    digest = hashlib.sha256((secret + email.lower()).encode("utf-8")).digest()
    return base64.b64encode(digest).decode("utf-8")


class AuthManager:
    """Logs in, verifies and periodically refreshes the upstream session.

    ``max_attempts`` bounds the login retries made by ``ensure_authenticated``;
    ``max_attempts=1`` gives a single-shot policy. ``sleep`` is injectable so
    tests can observe the retry delay without waiting for it.
    """

    def __init__(
        self,
        client: UpstreamClient,
        credential: Credential | None = None,
        max_attempts: int = 5,
        retry_delay: float = 10.0,
        reauth_interval: float = 15 * 60,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.client = client
        self.credential = credential
        self.max_attempts = max(1, int(max_attempts))
        self.retry_delay = max(0.0, float(retry_delay))
        self.reauth_interval = reauth_interval
        self.state = AuthState.UNAUTHENTICATED
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._task: asyncio.Task | None = None

    @classmethod
    def from_settings(cls, client: UpstreamClient, settings, **kwargs) -> "AuthManager":
        return cls(
            client,
            credential=settings.credential() if settings.has_credential else None,
            max_attempts=settings.login_max_attempts,
            retry_delay=settings.login_retry_delay,
            reauth_interval=settings.reauth_interval_minutes * 60,
            **kwargs,
        )

    @property
    def authenticated(self) -> bool:
        return self.state is AuthState.AUTHENTICATED

    async def login(self, credential: Credential | None = None) -> bool:
        """Log in and replace the session. Returns ``False`` instead of raising."""
        credential = credential or self.credential
        if credential is None or not credential.email or not credential.secret:
            logger.error("iRacing login skipped: credentials are not configured")
            self.state = AuthState.UNAUTHENTICATED
            return False

        body = {
            "email": credential.email,
            "password": hash_password(credential.secret, credential.email),
        }
        try:
            cookies = await self.client.post_for_cookies(AUTH_PATH, body)
            if not cookies:
                raise AuthError("No session cookies in login response")
        except (AuthError, UpstreamError) as exc:
            logger.error("iRacing login failed: %s", exc)
            self.state = AuthState.UNAUTHENTICATED
            return False

        self.client.sessions.set(cookies)
        self.state = AuthState.AUTHENTICATED
        logger.info("iRacing login succeeded (%d cookies)", len(cookies))
        return True

    async def verify(self) -> bool:
        """Probe the API with the current session. Never raises."""
        if self.client.sessions.is_empty():
            self.state = AuthState.UNAUTHENTICATED
            return False
        try:
            status = await self.client.probe(PROBE_PATH)
        except UpstreamError as exc:
            logger.warning("iRacing session probe failed: %s", exc)
            self.state = AuthState.UNAUTHENTICATED
            return False

        if status == 200:
            self.state = AuthState.AUTHENTICATED
            return True
        logger.info("iRacing session probe returned HTTP %s", status)
        self.state = AuthState.UNAUTHENTICATED
        return False

    async def ensure_authenticated(self, credential: Credential | None = None) -> bool:
        """Verify the session and log in again, with bounded retries, when it is stale."""
        async with self._lock:
            if await self.verify():
                return True

            for attempt in range(1, self.max_attempts + 1):
                if await self.login(credential):
                    return True
                if attempt < self.max_attempts:
                    logger.warning(
                        "Login attempt %d/%d failed; retrying in %.1fs",
                        attempt,
                        self.max_attempts,
                        self.retry_delay,
                    )
                    await self._sleep(self.retry_delay)

            logger.error("Giving up on iRacing login after %d attempts", self.max_attempts)
            return False

    def require_session(self) -> None:
        if self.client.sessions.is_empty():
            raise AuthError("No iRacing session established")

    # ------------------------------------------------------------------
    # Periodic re-authentication

    def start(self) -> asyncio.Task:
        """Schedule the periodic re-authentication task on the running loop."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._reauth_loop(), name="iracing-reauth")
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _reauth_loop(self) -> None:
        while True:
            await self._sleep(self.reauth_interval)
            try:
                ok = await self.ensure_authenticated()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Scheduled iRacing re-authentication crashed")
                continue
            if not ok:
                logger.error("Scheduled iRacing re-authentication failed; serving degraded")
