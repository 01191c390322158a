"""Pytest configuration and shared fixtures."""

import secrets
import time
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import parse_qsl

import httpx
import pytest
from authlib.jose import JsonWebKey, JsonWebToken
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from multiauth.config import Settings
from multiauth.db import Base
from multiauth.providers.descriptor import IdentityChannel, PkceMode, ProviderDescriptor
from multiauth.providers.registry import ProviderRegistry
from multiauth.schemas.auth import Identity, Session
from multiauth.services.secrets import StaticSecretProvider

# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

ISSUER = "https://idp.example.com"
CLIENT_ID = "client-123"
KEY_ID = "test-key-1"


class FakeClock:
    """Settable clock for components that take a ``clock`` callable."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 15, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def generate_rsa_key(kid: str):
    return JsonWebKey.generate_key("RSA", 2048, is_private=True, options={"kid": kid})


def public_jwk(key) -> dict[str, Any]:
    jwk = key.as_dict(is_private=False)
    jwk.update({"use": "sig", "alg": "RS256"})
    return jwk


def sign_jwt(key, claims: dict[str, Any], header: dict[str, Any] | None = None) -> str:
    header = header or {"alg": "RS256", "kid": key.as_dict()["kid"]}
    token = JsonWebToken([header["alg"]]).encode(header, claims, key)
    return token.decode("utf-8") if isinstance(token, bytes) else token


def make_descriptor(**overrides) -> ProviderDescriptor:
    """OIDC provider served by ``FakeIdentityProvider``."""
    values = {
        "provider_id": "acme",
        "display_name": "Acme ID",
        "authorization_endpoint": f"{ISSUER}/authorize",
        "token_endpoint": f"{ISSUER}/token",
        "jwks_uri": f"{ISSUER}/keys",
        "userinfo_endpoint": f"{ISSUER}/userinfo",
        "issuers": (ISSUER,),
        "client_id": CLIENT_ID,
        "client_secret_key": "acme_client_secret",
        "default_scopes": ("openid", "email", "profile"),
        "identity_channel": IdentityChannel.ID_TOKEN,
        "pkce": PkceMode.REQUIRED,
        "end_session_endpoint": f"{ISSUER}/logout",
        "supports_refresh_tokens": True,
    }
    values.update(overrides)
    return ProviderDescriptor(**values)


def make_identity(provider_id: str = "acme", subject_id: str = "user-1", **overrides) -> Identity:
    values = {
        "subject_id": subject_id,
        "provider_id": provider_id,
        "email": f"{subject_id}@example.com",
        "email_verified": True,
        "display_name": subject_id.title(),
    }
    values.update(overrides)
    return Identity(**values)


def make_session(
    identities: list[Identity] | None = None,
    now: datetime | None = None,
    ttl: timedelta = timedelta(hours=1),
    **overrides,
) -> Session:
    now = now or datetime(2026, 1, 15, 12, 0, tzinfo=UTC)
    identities = identities or [make_identity()]
    values = {
        "session_id": secrets.token_urlsafe(16),
        "primary_provider_id": identities[0].provider_id,
        "identities": {i.provider_id: i for i in identities},
        "created_at": now,
        "expires_at": now + ttl,
        "last_accessed_at": now,
    }
    values.update(overrides)
    return Session(**values)


class FakeIdentityProvider:
    """``httpx.MockTransport`` handler emulating one OIDC provider.

    Serves ``/token``, ``/keys`` and ``/userinfo`` under ``ISSUER``.
    """

    def __init__(self, signing_key, client_id: str = CLIENT_ID):
        self.signing_key = signing_key
        self.client_id = client_id
        self.keys = [public_jwk(signing_key)]
        self.codes: dict[str, dict[str, Any]] = {}
        self.refresh_tokens: dict[str, str] = {}
        self.userinfo: dict[str, Any] = {}
        self.requests: list[httpx.Request] = []
        # Queued token endpoint outcomes: httpx.Response or an httpx exception class
        self.token_queue: list[Any] = []
        self.jwks_fetches = 0
        self.rotate_refresh_tokens = False

    def issue_code(self, nonce: str, sub: str = "user-1", **claims) -> str:
        """What the provider does when the user signs in at the authorization URL."""
        code = secrets.token_urlsafe(16)
        self.codes[code] = {"sub": sub, "nonce": nonce, **claims}
        return code

    def sign(self, claims: dict[str, Any]) -> str:
        return sign_jwt(self.signing_key, claims)

    def requests_to(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.endswith("/keys"):
            self.jwks_fetches += 1
            return httpx.Response(200, json={"keys": self.keys})
        if path.endswith("/token"):
            return self._token(request)
        if path.endswith("/userinfo"):
            if request.headers.get("Authorization", "").startswith("Bearer "):
                return httpx.Response(200, json=self.userinfo)
            return httpx.Response(401, json={"error": "invalid_token"})
        return httpx.Response(404)

    def _token(self, request: httpx.Request) -> httpx.Response:
        if self.token_queue:
            outcome = self.token_queue.pop(0)
            if isinstance(outcome, type) and issubclass(outcome, Exception):
                raise outcome("simulated transport failure", request=request)
            return outcome

        form = dict(parse_qsl(request.content.decode()))
        if form.get("grant_type") == "authorization_code":
            claims = self.codes.pop(form.get("code", ""), None)
            if claims is None:
                return httpx.Response(
                    400, json={"error": "invalid_grant", "error_description": "Code already used"}
                )
            now = int(time.time())
            id_token = self.sign(
                {"iss": ISSUER, "aud": self.client_id, "iat": now, "exp": now + 600, **claims}
            )
            refresh_token = secrets.token_urlsafe(24)
            self.refresh_tokens[refresh_token] = claims["sub"]
            return httpx.Response(
                200,
                json={
                    "access_token": secrets.token_urlsafe(24),
                    "token_type": "Bearer",
                    "expires_in": 3600,
                    "id_token": id_token,
                    "refresh_token": refresh_token,
                    "scope": "openid email profile",
                },
            )

        if form.get("grant_type") == "refresh_token":
            sub = self.refresh_tokens.get(form.get("refresh_token", ""))
            if sub is None:
                return httpx.Response(
                    400, json={"error": "invalid_grant", "error_description": "Token revoked"}
                )
            body = {"access_token": secrets.token_urlsafe(24), "token_type": "Bearer", "expires_in": 3600}
            if self.rotate_refresh_tokens:
                del self.refresh_tokens[form["refresh_token"]]
                new_token = secrets.token_urlsafe(24)
                self.refresh_tokens[new_token] = sub
                body["refresh_token"] = new_token
            return httpx.Response(200, json=body)

        return httpx.Response(400, json={"error": "unsupported_grant_type"})


@pytest.fixture(scope="session")
def signing_key():
    """RSA key the fake provider signs identity tokens with."""
    return generate_rsa_key(KEY_ID)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the environment and any .env file."""
    return Settings(
        _env_file=None,
        base_url="https://app.example.com",
        database_url=TEST_DATABASE_URL,
        allowed_return_origins=["https://app.example.com"],
        google_enabled=True,
        google_client_id="google-client",
        facebook_enabled=True,
        facebook_client_id="fb-app",
        apple_enabled=True,
        apple_client_id="com.example.web",
        apple_team_id="TEAM123456",
        apple_key_id="KEY1234567",
        azure_b2c_enabled=True,
        azure_b2c_client_id="b2c-client",
        azure_b2c_tenant="contoso.onmicrosoft.com",
        azure_b2c_tenant_id="00000000-1111-2222-3333-444444444444",
    )


@pytest.fixture
def secret_provider() -> StaticSecretProvider:
    return StaticSecretProvider(
        {
            "acme_client_secret": "acme-secret-value",
            "google_client_secret": "google-secret-value",
            "facebook_app_secret": "fb-secret-value",
            "azure_b2c_client_secret": "b2c-secret-value",
        }
    )


@pytest.fixture
def acme() -> ProviderDescriptor:
    return make_descriptor()


@pytest.fixture
def registry(acme) -> ProviderRegistry:
    return ProviderRegistry([acme])


@pytest.fixture
def idp(signing_key) -> FakeIdentityProvider:
    return FakeIdentityProvider(signing_key)


@pytest.fixture
async def http_client(idp) -> AsyncGenerator[httpx.AsyncClient]:
    """Outbound client whose every request is answered by the fake provider."""
    async with httpx.AsyncClient(transport=httpx.MockTransport(idp.handler)) as client:
        yield client


@pytest.fixture
async def db_engine():
    """Create test database engine."""
    import multiauth.models  # noqa: F401

    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    try:
        yield engine
    finally:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        await engine.dispose(close=True)


@pytest.fixture
def session_maker(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
