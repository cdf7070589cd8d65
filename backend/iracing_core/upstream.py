"""Authenticated access to the iRacing data API.

Most data endpoints do not return their payload directly. They answer with a
small envelope such as ``{"link": "https://...", "expires": "..."}`` pointing at
a cached copy of the real document, which must be fetched with a second,
unauthenticated GET. ``UpstreamClient.request`` resolves that two-hop pattern
for every endpoint so callers only ever see the final payload.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import httpx

from .errors import UpstreamError
from .session import SessionStore

logger = logging.getLogger(__name__)


class EnvelopeKind(enum.Enum):
    LINK = "link"
    DATA_URL = "data_url"
    DIRECT = "direct"
    MALFORMED = "malformed"


@dataclass(frozen=True)
class Envelope:
    kind: EnvelopeKind
    target: Optional[str] = None
    payload: Any = None

    @classmethod
    def from_payload(cls, payload: Any) -> "Envelope":
        if isinstance(payload, dict):
            for key, kind in (("link", EnvelopeKind.LINK), ("data_url", EnvelopeKind.DATA_URL)):
                if key not in payload:
                    continue
                target = payload.get(key)
                if isinstance(target, str) and target.strip():
                    return cls(kind=kind, target=target.strip(), payload=payload)
                return cls(kind=EnvelopeKind.MALFORMED, payload=payload)
        return cls(kind=EnvelopeKind.DIRECT, payload=payload)

    @property
    def indirect(self) -> bool:
        return self.kind in (EnvelopeKind.LINK, EnvelopeKind.DATA_URL)


def cookie_header(cookies: Mapping[str, str]) -> str:
    return "; ".join(f"{key}={value}" for key, value in cookies.items())


class UpstreamClient:
    """Shared HTTP context for every component that talks to the upstream API.

    Owns the ``httpx.AsyncClient`` and the ``SessionStore``. Certificate
    verification toward the upstream host follows ``verify_tls``; it is off by
    default because members-ng has been served with chains that fail strict
    validation. Pass ``verify_tls=True`` where the host chain is trusted.
    """

    def __init__(
        self,
        sessions: SessionStore | None = None,
        base_url: str = "https://members-ng.iracing.com",
        timeout: float = 30.0,
        verify_tls: bool = False,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.sessions = sessions or SessionStore()
        self.base_url = base_url.rstrip("/")
        self._http = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=min(10.0, timeout)),
            verify=verify_tls,
            transport=transport,
            follow_redirects=True,
        )

    @classmethod
    def from_settings(cls, settings, sessions: SessionStore | None = None, **kwargs: Any) -> "UpstreamClient":
        return cls(
            sessions=sessions,
            base_url=settings.upstream_base_url,
            timeout=settings.upstream_timeout,
            verify_tls=settings.verify_tls,
            **kwargs,
        )

    def url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        body: Any = None,
    ) -> Any:
        """Perform an authenticated call and return the resolved payload."""
        response = await self._send(method, path, params=params, body=body, authenticated=True)
        payload = self._decode(response, path)

        envelope = Envelope.from_payload(payload)
        if envelope.kind is EnvelopeKind.MALFORMED:
            raise UpstreamError(f"Malformed envelope from {path}", status=response.status_code, body=payload)
        if not envelope.indirect:
            return envelope.payload

        logger.debug("Following %s envelope for %s", envelope.kind.value, path)
        follow_up = await self._send("GET", envelope.target, authenticated=False)
        return self._decode(follow_up, envelope.target)

    async def post_for_cookies(self, path: str, body: Dict[str, Any]) -> Dict[str, str]:
        """POST ``body`` and return the cookies the response sets."""
        response = await self._send("POST", path, body=body, authenticated=False)
        cookies = {name: value for name, value in response.cookies.items()}
        # Cookies live in SessionStore only; the client jar must not add a second copy.
        self._http.cookies.clear()
        return cookies

    async def probe(self, path: str) -> int:
        """Return the HTTP status of an authenticated GET without raising on non-2xx."""
        response = await self._send("GET", path, authenticated=True, raise_for_status=False)
        return response.status_code

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _send(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        body: Any = None,
        authenticated: bool = True,
        raise_for_status: bool = True,
    ) -> httpx.Response:
        headers = {"Accept": "application/json"}
        if authenticated:
            cookies = self.sessions.current()
            if cookies:
                headers["Cookie"] = cookie_header(cookies)
        if body is not None:
            headers["Content-Type"] = "application/json"

        url = self.url(path)
        try:
            response = await self._http.request(method, url, params=params, json=body, headers=headers)
        except httpx.TimeoutException as exc:
            raise UpstreamError(f"Timed out calling {path}") from exc
        except httpx.HTTPError as exc:
            raise UpstreamError(f"Request to {path} failed: {exc}") from exc

        if raise_for_status and not response.is_success:
            raise UpstreamError(
                f"Upstream rejected {method} {path}",
                status=response.status_code,
                body=response.text,
            )
        return response

    @staticmethod
    def _decode(response: httpx.Response, path: str) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamError(
                f"Non-JSON response from {path}",
                status=response.status_code,
                body=response.text,
            ) from exc
