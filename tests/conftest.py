"""
Test configuration and fixtures.

Provides:
    • Fresh in-memory SQLite database per test (aiosqlite, FK cascades on)
    • Controllable clock shared by every service under test
    • RSA service-account key for credential tests
    • httpx MockTransport fakes for the token endpoint and FCM
"""

from __future__ import annotations

import asyncio
import json
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

# Must be set before backend.app.core.config is imported
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("ENVIRONMENT", "test")

import httpx
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from backend.app.alerts.accounts import AccountService
from backend.app.alerts.alert_service import AlertStore
from backend.app.alerts.channels.credentials import PushCredentials
from backend.app.alerts.channels.fcm_push import FcmPushChannel
from backend.app.alerts.dispatcher import PushDispatcher
from backend.app.core.database import build_engine, build_session_factory, init_db

TOKEN_URI = "https://oauth2.googleapis.com/token"
FCM_BASE = "https://fcm.googleapis.com"
PROJECT_ID = "plate-alerts-test"
CLIENT_EMAIL = "push@plate-alerts-test.iam.gserviceaccount.com"


# ═══════════════════════════════════════════════════════════════════════════
# Clock
# ═══════════════════════════════════════════════════════════════════════════

class FakeClock:
    """Callable clock; tests move time with advance()."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc))


# ═══════════════════════════════════════════════════════════════════════════
# Database
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture
async def engine():
    eng = build_engine("sqlite+aiosqlite://")
    await init_db(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def store(session_factory, clock) -> AlertStore:
    return AlertStore(session_factory, clock=clock)


@pytest.fixture
def accounts(session_factory, clock) -> AccountService:
    return AccountService(session_factory, clock=clock)


# ═══════════════════════════════════════════════════════════════════════════
# Keys
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture(scope="session")
def rsa_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def private_key_pem(rsa_key) -> str:
    return rsa_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")


# ═══════════════════════════════════════════════════════════════════════════
# Provider fakes
# ═══════════════════════════════════════════════════════════════════════════

class FakeTokenEndpoint:
    """
    OAuth2 token endpoint. Set `status` to make exchanges fail.

    The handler yields to the event loop once so concurrent callers really
    overlap while an exchange is in flight.
    """

    def __init__(self):
        self.calls = 0
        self.status = 200
        self.expires_in = 3600
        self.requests: List[httpx.Request] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        number = self.calls
        self.requests.append(request)
        await asyncio.sleep(0)
        if self.status != 200:
            return httpx.Response(self.status, json={"error": "invalid_grant"})
        return httpx.Response(200, json={
            "access_token": f"ya29.test-{number}",
            "expires_in": self.expires_in,
            "token_type": "Bearer",
        })


Reply = Union[Tuple[int, Dict[str, Any]], Exception]


def fcm_error(status: int, error_code: Optional[str], message: str = "") -> Tuple[int, Dict[str, Any]]:
    """FCM v1 error body with an optional FcmError detail."""
    error: Dict[str, Any] = {"code": status, "message": message, "status": "ERROR"}
    if error_code:
        error["details"] = [{
            "@type": "type.googleapis.com/google.firebase.fcm.v1.FcmError",
            "errorCode": error_code,
        }]
    return status, {"error": error}


class FakeFcm:
    """
    FCM v1 endpoint keyed by device token. Unknown tokens succeed.
    A reply may be an exception instance, which the transport raises.
    """

    def __init__(self):
        self.replies: Dict[str, Reply] = {}
        self.messages: List[Dict[str, Any]] = []
        self.auth_headers: List[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        message = json.loads(request.content)["message"]
        self.messages.append(message)
        self.auth_headers.append(request.headers.get("Authorization", ""))
        reply = self.replies.get(message["token"])
        if isinstance(reply, Exception):
            raise reply
        if reply is None:
            return httpx.Response(200, json={
                "name": f"projects/{PROJECT_ID}/messages/{len(self.messages)}",
            })
        status, body = reply
        return httpx.Response(status, json=body)

    def tokens_sent(self) -> List[str]:
        return [m["token"] for m in self.messages]


@pytest.fixture
def token_endpoint() -> FakeTokenEndpoint:
    return FakeTokenEndpoint()


@pytest.fixture
def fcm() -> FakeFcm:
    return FakeFcm()


@pytest.fixture
async def credentials(token_endpoint, private_key_pem, clock):
    client = httpx.AsyncClient(transport=httpx.MockTransport(token_endpoint))
    creds = PushCredentials(
        CLIENT_EMAIL, private_key_pem, token_uri=TOKEN_URI, client=client, clock=clock,
    )
    yield creds
    await client.aclose()


@pytest.fixture
async def channel(fcm):
    client = httpx.AsyncClient(transport=httpx.MockTransport(fcm))
    yield FcmPushChannel(PROJECT_ID, base_url=FCM_BASE, client=client)
    await client.aclose()


@pytest.fixture
def dispatcher(store, channel, credentials) -> PushDispatcher:
    return PushDispatcher(store, channel, credentials, max_concurrency=4)
