from __future__ import annotations

from typing import Any


class AuthError(RuntimeError):
    """Raised when the upstream API rejects a login or no session is held."""


class UpstreamError(RuntimeError):
    """Transport or protocol failure talking to the upstream racing API.

    ``status`` is ``None`` for timeouts and connection errors. ``body`` keeps the
    raw upstream response for operator diagnostics; it must not be echoed back
    to API clients.
    """

    def __init__(self, message: str, status: int | None = None, body: Any = None) -> None:
        super().__init__(message)
        self.status = status
        self.body = body

    def __str__(self) -> str:
        base = super().__str__()
        if self.status is None:
            return base
        return f"{base} (HTTP {self.status})"


class PersistenceError(RuntimeError):
    """Backing store read or write failure."""
