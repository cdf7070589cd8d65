from __future__ import annotations

import datetime as dt
import json
from typing import Any, Callable, Dict, Generator, List

import httpx
import pytest

from iracing_core import Settings, UpstreamClient

BASE_URL = "https://members-ng.iracing.com"
NOW = dt.datetime(2026, 10, 17, 12, 0, tzinfo=dt.timezone.utc)

SUPABASE_ENV = (
    "SUPABASE_URL",
    "SUPABASE_SERVICE_ROLE_KEY",
    "SUPABASE_SERVICE_KEY",
    "SUPABASE_ANON_KEY",
    "SUPABASE_SCHEMA",
    "SUPABASE_RACES_TABLE",
    "SUPABASE_RACE_CARS_TABLE",
)


@pytest.fixture(autouse=True)
def reset_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    for name in SUPABASE_ENV:
        monkeypatch.delenv(name, raising=False)
    yield


def minutes_from(now: dt.datetime, minutes: float) -> str:
    return (now + dt.timedelta(minutes=minutes)).isoformat().replace("+00:00", "Z")


def link_payload(url: str) -> Dict[str, Any]:
    return {"link": url, "expires": "2099-01-01T00:00:00Z"}


class FakeUpstream:
    """Routes requests for a MockTransport: each API path answers with a link
    envelope, and the linked document is served from ``documents``."""

    def __init__(self) -> None:
        self.documents: Dict[str, Any] = {}
        self.overrides: Dict[str, Callable[[httpx.Request], httpx.Response]] = {}
        self.requests: List[httpx.Request] = []
        self.auth_cookies = {"irsso_membersv2": "token-1", "authtoken_members": "token-2"}
        self.probe_status = 200

    def serve(self, path: str, document: Any) -> None:
        self.documents[path] = document

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path in self.overrides:
            return self.overrides[path](request)
        if request.url.host == "s3.example.com":
            document = self.documents.get(path.replace("/cache", "", 1))
            if document is None:
                return httpx.Response(404, json={"error": "missing"})
            return httpx.Response(200, json=document)
        if path == "/auth":
            headers = [("set-cookie", f"{key}={value}; Path=/") for key, value in self.auth_cookies.items()]
            return httpx.Response(200, json={"authcode": 1}, headers=headers)
        if path == "/data/doc":
            return httpx.Response(self.probe_status, json={})
        if path in self.documents:
            return httpx.Response(200, json=link_payload(f"https://s3.example.com/cache{path}"))
        return httpx.Response(404, json={"error": "unknown endpoint"})

    def calls(self, path: str) -> List[httpx.Request]:
        return [request for request in self.requests if request.url.path == path]


@pytest.fixture
def fake_upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def upstream(fake_upstream: FakeUpstream) -> UpstreamClient:
    client = UpstreamClient(base_url=BASE_URL, transport=httpx.MockTransport(fake_upstream))
    client.sessions.set({"irsso_membersv2": "token-1"})
    return client


@pytest.fixture
def local_settings(tmp_path) -> Settings:
    return Settings(
        iracing_email="driver@example.com",
        iracing_password="hunter2",
        supabase_url="",
        supabase_key="",
        data_dir=tmp_path,
    )


def decode_json(request: httpx.Request) -> Any:
    return json.loads(request.content.decode("utf-8"))
