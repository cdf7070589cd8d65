from __future__ import annotations

import datetime as dt
import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping


@dataclass(frozen=True)
class Credential:
    email: str
    secret: str = field(repr=False)


@dataclass(frozen=True)
class Session:
    cookies: Mapping[str, str]
    established_at: dt.datetime


class SessionStore:
    """Holds the single live upstream session for the process.

    Sessions are swapped as whole objects so a reader always sees either the
    previous or the new cookie set, never a mix of both.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._session: Session | None = None

    def set(self, cookies: Mapping[str, str]) -> Session:
        session = Session(
            cookies=MappingProxyType(dict(cookies)),
            established_at=dt.datetime.now(dt.timezone.utc),
        )
        with self._lock:
            self._session = session
        return session

    def current(self) -> Mapping[str, str]:
        with self._lock:
            session = self._session
        if session is None:
            return MappingProxyType({})
        return session.cookies

    def session(self) -> Session | None:
        with self._lock:
            return self._session

    def is_empty(self) -> bool:
        return not self.current()

    def clear(self) -> None:
        with self._lock:
            self._session = None

    @property
    def established_at(self) -> dt.datetime | None:
        session = self.session()
        return session.established_at if session else None
