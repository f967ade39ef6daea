"""
credentials.py — Short-lived OAuth2 access token for the push provider.

Flow (service-account JWT bearer grant):

    ┌──────────────────────┐
    │ 1. Sign assertion    │  RS256 with the service-account private key
    │    iss/sub = email   │  aud = token URI, exp = iat + 1h,
    │                      │  scope = firebase.messaging
    └─────────┬────────────┘
              │
              ▼
    ┌──────────────────────┐
    │ 2. Exchange          │  POST token URI (form-encoded)
    │                      │  grant_type=urn:ietf:params:oauth:grant-type:jwt-bearer
    └─────────┬────────────┘
              │
              ▼
    ┌──────────────────────┐
    │ 3. Cache             │  valid until expires_at − refresh margin (5 min)
    └──────────────────────┘

Concurrent callers during a cache miss share one exchange (single-flight
under an asyncio.Lock). A failed exchange raises CredentialError and never
falls back to a stale token.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

import httpx
import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from backend.app.core.config import Settings, settings as default_settings
from backend.app.core.database import utcnow
from backend.app.core.errors import CredentialError

logger = logging.getLogger(__name__)

JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"


@dataclass(frozen=True)
class AccessToken:
    value: str
    expires_at: datetime


def load_private_key(pem: str) -> rsa.RSAPrivateKey:
    """
    Parse a PEM private key. Literal ``\\n`` sequences (as found in env
    vars) are turned into newlines first.
    """
    if not pem or not pem.strip():
        raise CredentialError("private key is empty")
    normalized = pem.replace("\\n", "\n").strip()
    try:
        key = serialization.load_pem_private_key(normalized.encode("utf-8"), password=None)
    except (ValueError, TypeError) as exc:
        raise CredentialError("private key could not be parsed", reason=str(exc))
    if not isinstance(key, rsa.RSAPrivateKey):
        raise CredentialError("private key is not an RSA key")
    return key


class PushCredentials:
    """
    Owner of the cached provider access token.

    Parameters
    ----------
    client_email : str
        Service-account identity (assertion issuer and subject).
    private_key : str
        PEM text of the service-account key.
    token_uri : str
        Identity provider token endpoint (assertion audience).
    scope : str
    client : httpx.AsyncClient, optional
        Injected for tests; created lazily otherwise.
    clock : callable
        Returns the current UTC time.
    """

    def __init__(
        self,
        client_email: str,
        private_key: str,
        *,
        token_uri: str = default_settings.GOOGLE_TOKEN_URI,
        scope: str = default_settings.FCM_SCOPE,
        refresh_margin: timedelta = timedelta(seconds=default_settings.TOKEN_REFRESH_MARGIN_SECONDS),
        assertion_lifetime: timedelta = timedelta(seconds=default_settings.ASSERTION_LIFETIME_SECONDS),
        timeout_seconds: float = default_settings.PUSH_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        if not client_email:
            raise CredentialError("client email is not configured")
        self.client_email = client_email
        self._private_key_pem = private_key
        self._private_key: Optional[rsa.RSAPrivateKey] = None
        self.token_uri = token_uri
        self.scope = scope
        self.refresh_margin = refresh_margin
        self.assertion_lifetime = min(assertion_lifetime, timedelta(hours=1))
        self.timeout_seconds = timeout_seconds
        self.clock = clock
        self._http_client = client
        self._owns_client = client is None
        self._cached: Optional[AccessToken] = None
        self._lock = asyncio.Lock()
        self.exchange_count = 0

    @classmethod
    def from_settings(
        cls,
        config: Optional[Settings] = None,
        **kwargs: Any,
    ) -> "PushCredentials":
        """
        Build from split env vars, or from FIREBASE_SERVICE_ACCOUNT_KEY
        (base64-encoded service-account JSON) when set.
        """
        config = config or default_settings
        client_email = config.FIREBASE_CLIENT_EMAIL
        private_key = config.FIREBASE_PRIVATE_KEY
        token_uri = config.GOOGLE_TOKEN_URI

        if config.FIREBASE_SERVICE_ACCOUNT_KEY:
            try:
                raw = base64.b64decode(config.FIREBASE_SERVICE_ACCOUNT_KEY, validate=True)
                account: Dict[str, Any] = json.loads(raw)
            except (binascii.Error, ValueError) as exc:
                raise CredentialError("service account key is not valid base64 JSON", reason=str(exc))
            client_email = account.get("client_email") or client_email
            private_key = account.get("private_key") or private_key
            token_uri = account.get("token_uri") or token_uri

        if not client_email or not private_key:
            raise CredentialError("push provider credentials are not configured")

        kwargs.setdefault("token_uri", token_uri)
        kwargs.setdefault("scope", config.FCM_SCOPE)
        kwargs.setdefault("refresh_margin", timedelta(seconds=config.TOKEN_REFRESH_MARGIN_SECONDS))
        kwargs.setdefault("assertion_lifetime", timedelta(seconds=config.ASSERTION_LIFETIME_SECONDS))
        kwargs.setdefault("timeout_seconds", config.PUSH_TIMEOUT_SECONDS)
        return cls(client_email, private_key, **kwargs)

    # ── HTTP client ──

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self.timeout_seconds)
            self._owns_client = True
        return self._http_client

    async def close(self) -> None:
        if self._owns_client and self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    # ── Cache ──

    @property
    def has_cached_token(self) -> bool:
        return self._is_fresh(self._cached)

    def _is_fresh(self, token: Optional[AccessToken]) -> bool:
        return token is not None and self.clock() < token.expires_at - self.refresh_margin

    def invalidate(self) -> None:
        self._cached = None

    async def get_access_token(self, force_refresh: bool = False) -> str:
        """
        Return a bearer token valid for at least the refresh margin.

        Raises
        ------
        CredentialError
            Key material cannot be parsed or the exchange fails.
        """
        seen = self._cached
        if not force_refresh and self._is_fresh(seen):
            return seen.value

        async with self._lock:
            # Another caller may have refreshed while we waited
            cached = self._cached
            if self._is_fresh(cached) and (not force_refresh or cached is not seen):
                return cached.value
            token = await self._exchange()
            self._cached = token
            return token.value

    # ── Assertion & exchange ──

    def build_assertion(self, now: Optional[datetime] = None) -> str:
        if self._private_key is None:
            self._private_key = load_private_key(self._private_key_pem)
        now = now or self.clock()
        issued = int(now.timestamp())
        claims = {
            "iss": self.client_email,
            "sub": self.client_email,
            "aud": self.token_uri,
            "iat": issued,
            "exp": issued + int(self.assertion_lifetime.total_seconds()),
            "scope": self.scope,
        }
        return jwt.encode(claims, self._private_key, algorithm="RS256")

    async def _exchange(self) -> AccessToken:
        now = self.clock()
        assertion = self.build_assertion(now)
        client = await self._get_client()
        started = time.perf_counter()
        try:
            response = await client.post(
                self.token_uri,
                data={"grant_type": JWT_BEARER_GRANT, "assertion": assertion},
                timeout=self.timeout_seconds,
            )
        except httpx.HTTPError as exc:
            logger.error("Token exchange transport failure: %s", exc)
            raise CredentialError("token exchange request failed", reason=str(exc))

        duration_ms = round((time.perf_counter() - started) * 1000, 1)
        if response.status_code < 200 or response.status_code >= 300:
            logger.error(
                "Token exchange rejected with HTTP %d", response.status_code,
                extra={"status_code": response.status_code, "duration_ms": duration_ms},
            )
            raise CredentialError(
                "token exchange rejected",
                http_status=response.status_code,
                body=response.text[:500],
            )

        try:
            payload = response.json()
        except ValueError:
            raise CredentialError("token exchange returned non-JSON body")
        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not access_token:
            raise CredentialError("token exchange response has no access_token")

        expires_in = payload.get("expires_in", 3600)
        try:
            lifetime = timedelta(seconds=int(expires_in))
        except (TypeError, ValueError):
            raise CredentialError("token exchange returned a malformed expires_in")

        self.exchange_count += 1
        logger.info(
            "Obtained push access token (expires in %ds)", int(lifetime.total_seconds()),
            extra={"duration_ms": duration_ms},
        )
        return AccessToken(value=access_token, expires_at=now + lifetime)
