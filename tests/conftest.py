"""
Shared fixtures: a scripted HTTP session, controllable clocks, temp stores.
"""
import base64
import json
import threading
import time
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any, Callable, Dict, List, Optional

import pytest
import requests
from requests.cookies import RequestsCookieJar

from vocab_client.api_client import ApiClient
from vocab_client.notifications import SessionEvents
from vocab_client.storage import KeyValueStore, SqliteCredentialStore
from vocab_client.token_manager import TokenManager

BASE_URL = "http://api.test/api/v1"

OLD_TOKEN = "old-access-token"
NEW_TOKEN = "new-access-token"
OLD_REFRESH = "old-refresh-token"
NEW_REFRESH = "new-refresh-token"


# =============================================================================
# Helpers
# =============================================================================

def make_response(
    status: int = 200,
    body: Any = None,
    reason: Optional[str] = None,
    raw: Optional[bytes] = None,
) -> requests.Response:
    """Build a real requests.Response without touching the network."""
    response = requests.Response()
    response.status_code = status
    response.reason = reason if reason is not None else HTTPStatus(status).phrase
    if raw is not None:
        response._content = raw
    elif body is not None:
        response._content = json.dumps(body).encode("utf-8")
        response.headers["Content-Type"] = "application/json"
    else:
        response._content = b""
    return response


def envelope(data: Any) -> Dict[str, Any]:
    return {"version": 1, "data": data}


def make_jwt(exp: Optional[float] = None, claims: Optional[dict] = None) -> str:
    def encode(obj: dict) -> str:
        raw = json.dumps(obj).encode("utf-8")
        return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")

    payload = dict(claims or {})
    if exp is not None:
        payload["exp"] = exp
    return f"{encode({'alg': 'HS256', 'typ': 'JWT'})}.{encode(payload)}.signature"


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return False


@dataclass
class Call:
    method: str
    path: str
    headers: Dict[str, str]
    json: Any
    timeout: Optional[float]

    @property
    def token(self) -> Optional[str]:
        auth = self.headers.get("Authorization", "")
        return auth[len("Bearer "):] if auth.startswith("Bearer ") else None


class FakeSession:
    """
    Stand-in for requests.Session with scripted routes.

    A route is either a callable taking the Call, or a list of outcomes
    consumed in order. Outcomes are Responses or exceptions to raise.
    """

    def __init__(self, base_url: str = BASE_URL):
        self.base_url = base_url
        self.routes: Dict[tuple, Any] = {}
        self.calls: List[Call] = []
        self.cookies = RequestsCookieJar()
        self.closed = False
        self._lock = threading.Lock()

    def route(self, method: str, path: str, handler: Any) -> None:
        self.routes[(method, path)] = list(handler) if isinstance(handler, list) else handler

    def request(self, method, url, headers=None, json=None, timeout=None):
        path = url[len(self.base_url):]
        call = Call(method, path, dict(headers or {}), json, timeout)
        with self._lock:
            self.calls.append(call)
            handler = self.routes.get((method, path))
            if handler is None:
                raise AssertionError(f"Unexpected request {method} {path}")
            if isinstance(handler, list):
                outcome = handler.pop(0)
            else:
                outcome = None

        if outcome is None:
            outcome = handler(call)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    def calls_to(self, method: str, path: str) -> List[Call]:
        with self._lock:
            return [c for c in self.calls if c.method == method and c.path == path]

    def close(self) -> None:
        self.closed = True


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def wall_clock():
    return FakeClock()


@pytest.fixture
def mono_clock():
    return FakeClock(now=1000.0)


@pytest.fixture
def credentials(tmp_path):
    return SqliteCredentialStore(tmp_path / "credentials.db", BASE_URL)


@pytest.fixture
def kv(tmp_path):
    return KeyValueStore(tmp_path / "kv.db")


@pytest.fixture
def token_manager(credentials, session, kv, wall_clock):
    return TokenManager(credentials, session, BASE_URL, kv_store=kv, clock=wall_clock)


@pytest.fixture
def events():
    return SessionEvents()


@pytest.fixture
def logouts(events):
    received = []
    events.subscribe(received.append)
    return received


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def api(token_manager, session, events, sleeps, mono_clock):
    return ApiClient(
        BASE_URL,
        token_manager,
        session=session,
        events=events,
        sleep=sleeps.append,
        clock=mono_clock,
    )


@pytest.fixture
def signed_in(credentials):
    """Store a non-JWT token pair (expiry unknown, used as-is)."""
    credentials.set("accessToken", OLD_TOKEN)
    credentials.set("refreshToken", OLD_REFRESH)
    return credentials


def refresh_ok(call: Call) -> requests.Response:
    return make_response(200, envelope({"accessToken": NEW_TOKEN, "refreshToken": NEW_REFRESH}))


def by_token(expected: str, body: Any, status_otherwise: int = 401):
    """Succeed only for requests carrying the expected bearer token."""
    def handler(call: Call) -> requests.Response:
        if call.token == expected:
            return make_response(200, body)
        return make_response(status_otherwise, {"message": "Unauthorized"})
    return handler
