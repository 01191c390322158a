"""End-to-end tests for the authentication orchestrator.

The fake provider answers every outbound call, so these tests drive the full
authorization-code flow: URL, callback, token exchange, identity token
verification, normalization and session creation.
"""

import asyncio
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from conftest import make_descriptor

from multiauth.db import create_session_maker
from multiauth.errors import (
    AccountLinkingDisabled,
    IdentityAlreadyLinkedElsewhere,
    InvalidGrant,
    InvalidReturnUrl,
    ProviderDisabled,
    SessionExpired,
    SessionNotFound,
    StateMismatchError,
    TokenValidationError,
    TokenValidationReason,
    UnknownProvider,
)
from multiauth.providers.registry import ProviderRegistry, build_registry
from multiauth.repositories.audit_log_repository import AuditLogRepository
from multiauth.runtime import build_runtime
from multiauth.schemas.auth import SessionStatus
from multiauth.services.secrets import StaticSecretProvider


def query_of(url: str) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


@pytest.fixture
def partner():
    """Second provider sharing the fake identity provider."""
    return make_descriptor(provider_id="partner", display_name="Partner", end_session_endpoint=None)


@pytest.fixture
async def runtime(settings, secret_provider, http_client, acme, partner):
    runtime = build_runtime(
        settings,
        secret_provider=secret_provider,
        http_client=http_client,
        registry=ProviderRegistry([acme, partner]),
        use_database=False,
    )
    try:
        yield runtime
    finally:
        await runtime.aclose()


@pytest.fixture
def orchestrator(runtime):
    return runtime.orchestrator


async def start_login(orchestrator, provider_id="acme", return_url=None):
    url = await orchestrator.begin_login(provider_id, return_url)
    query = query_of(url)
    return query["state"], query["nonce"]


async def sign_in(orchestrator, idp, sub="user-1", provider_id="acme", return_url=None):
    state, nonce = await start_login(orchestrator, provider_id, return_url)
    code = idp.issue_code(nonce, sub=sub, email=f"{sub}@example.com", email_verified=True)
    return await orchestrator.complete_login(provider_id, code, state)


class TestLogin:
    @pytest.mark.asyncio
    async def test_full_flow(self, orchestrator, idp):
        """Callback yields a verified identity and a live session."""
        result = await sign_in(orchestrator, idp, return_url="/dashboard")

        assert result.identity.subject_id == "user-1"
        assert result.identity.email_verified is True
        assert result.session.status is SessionStatus.AUTHENTICATED
        assert result.session.refresh_token is not None
        assert result.return_url == "/dashboard"

        session = await orchestrator.validate_session(result.session.session_id)
        assert session.primary_identity.subject_id == "user-1"

    @pytest.mark.asyncio
    async def test_authorization_url_shape(self, orchestrator):
        url = await orchestrator.begin_login("acme", "/next", {"prompt": "consent"})
        query = query_of(url)

        assert url.startswith("https://idp.example.com/authorize?")
        assert query["redirect_uri"] == "https://app.example.com/auth/acme/callback"
        assert query["code_challenge_method"] == "S256"
        assert query["prompt"] == "consent"

    @pytest.mark.asyncio
    async def test_second_login_resumes_session(self, orchestrator, idp):
        first = await sign_in(orchestrator, idp)
        second = await sign_in(orchestrator, idp)

        assert second.session.session_id == first.session.session_id

    @pytest.mark.asyncio
    async def test_parallel_logins_and_replays(self, orchestrator, idp):
        """Concurrent callbacks all succeed; replaying any state fails."""
        starts = [await start_login(orchestrator) for _ in range(10)]
        codes = [idp.issue_code(nonce, sub=f"user-{i}") for i, (_, nonce) in enumerate(starts)]

        results = await asyncio.gather(
            *(
                orchestrator.complete_login("acme", code, state)
                for (state, _), code in zip(starts, codes)
            )
        )

        assert sorted(r.identity.subject_id for r in results) == [f"user-{i}" for i in range(10)]
        assert len({r.session.session_id for r in results}) == 10

        for state, _ in starts:
            with pytest.raises(StateMismatchError):
                await orchestrator.complete_login("acme", "another-code", state)

    @pytest.mark.asyncio
    async def test_unknown_state(self, orchestrator):
        with pytest.raises(StateMismatchError):
            await orchestrator.complete_login("acme", "code", "forged-state")

    @pytest.mark.asyncio
    async def test_state_bound_to_provider(self, orchestrator, idp):
        """A state issued for one provider cannot complete another provider's callback."""
        state, nonce = await start_login(orchestrator, "acme")
        code = idp.issue_code(nonce)

        with pytest.raises(StateMismatchError):
            await orchestrator.complete_login("partner", code, state)
        # Consumed by the failed attempt
        with pytest.raises(StateMismatchError):
            await orchestrator.complete_login("acme", code, state)

    @pytest.mark.asyncio
    async def test_provider_error_consumes_state(self, orchestrator, idp):
        state, _ = await start_login(orchestrator)

        with pytest.raises(InvalidGrant) as exc_info:
            await orchestrator.complete_login(
                "acme", "", state, error="access_denied", error_description="User cancelled"
            )

        assert exc_info.value.error == "access_denied"
        assert idp.requests_to("/token") == []
        with pytest.raises(StateMismatchError):
            await orchestrator.complete_login("acme", "code", state)

    @pytest.mark.asyncio
    async def test_nonce_mismatch(self, orchestrator, idp):
        state, _ = await start_login(orchestrator)
        code = idp.issue_code("nonce-from-another-login")

        with pytest.raises(TokenValidationError) as exc_info:
            await orchestrator.complete_login("acme", code, state)
        assert exc_info.value.reason is TokenValidationReason.NONCE_MISMATCH

    @pytest.mark.asyncio
    async def test_missing_identity_token(self, orchestrator, idp):
        state, _ = await start_login(orchestrator)
        idp.token_queue.append(httpx.Response(200, json={"access_token": "at"}))

        with pytest.raises(TokenValidationError) as exc_info:
            await orchestrator.complete_login("acme", "code", state)
        assert exc_info.value.reason is TokenValidationReason.MALFORMED

    @pytest.mark.asyncio
    async def test_rejected_code(self, orchestrator, idp):
        state, _ = await start_login(orchestrator)

        with pytest.raises(InvalidGrant):
            await orchestrator.complete_login("acme", "never-issued", state)

    @pytest.mark.asyncio
    async def test_open_redirect_rejected(self, orchestrator):
        with pytest.raises(InvalidReturnUrl):
            await orchestrator.begin_login("acme", "https://evil.example.net/")

    @pytest.mark.asyncio
    async def test_unknown_and_disabled_providers(self, settings, secret_provider, http_client):
        runtime = build_runtime(
            settings,
            secret_provider=secret_provider,
            http_client=http_client,
            registry=ProviderRegistry([make_descriptor(enabled=False)]),
            use_database=False,
        )
        with pytest.raises(UnknownProvider):
            await runtime.orchestrator.begin_login("nope")
        with pytest.raises(ProviderDisabled):
            await runtime.orchestrator.begin_login("acme")
        with pytest.raises(ProviderDisabled):
            await runtime.orchestrator.complete_login("acme", "code", "state")
        await runtime.aclose()


class TestSessions:
    @pytest.mark.asyncio
    async def test_refresh_and_logout(self, orchestrator, idp):
        login = await sign_in(orchestrator, idp)
        session_id = login.session.session_id

        refreshed = await orchestrator.refresh_session(session_id)
        assert refreshed.status is SessionStatus.REFRESHED
        assert refreshed.expires_at >= login.session.expires_at

        await orchestrator.logout(session_id)
        await orchestrator.logout(session_id)
        with pytest.raises(SessionNotFound):
            await orchestrator.validate_session(session_id)

    @pytest.mark.asyncio
    async def test_revoked_refresh_token(self, orchestrator, idp):
        login = await sign_in(orchestrator, idp)
        idp.refresh_tokens.clear()

        with pytest.raises(SessionExpired):
            await orchestrator.refresh_session(login.session.session_id)
        with pytest.raises(SessionExpired):
            await orchestrator.validate_session(login.session.session_id)

    @pytest.mark.asyncio
    async def test_logout_url(self, orchestrator):
        url = orchestrator.get_logout_url("acme", "/bye")

        assert url == (
            "https://idp.example.com/logout?post_logout_redirect_uri="
            "https%3A%2F%2Fapp.example.com%2Fbye"
        )
        assert orchestrator.get_logout_url("partner") is None


class TestLinking:
    @pytest.mark.asyncio
    async def test_link_and_unlink(self, orchestrator, idp):
        login = await sign_in(orchestrator, idp)
        session_id = login.session.session_id

        state, nonce = await start_login(orchestrator, "partner")
        code = idp.issue_code(nonce, sub="partner-9")
        linked = await orchestrator.link_account(session_id, "partner", code, state)

        assert set(linked.identities) == {"acme", "partner"}

        # Signing in with the linked identity lands in the same session
        again = await sign_in(orchestrator, idp, sub="partner-9", provider_id="partner")
        assert again.session.session_id == session_id

        unlinked = await orchestrator.unlink_account(session_id, "partner")
        assert set(unlinked.identities) == {"acme"}

    @pytest.mark.asyncio
    async def test_link_identity_owned_elsewhere(self, orchestrator, idp):
        await sign_in(orchestrator, idp, sub="partner-9", provider_id="partner")
        login = await sign_in(orchestrator, idp, sub="user-1")

        state, nonce = await start_login(orchestrator, "partner")
        code = idp.issue_code(nonce, sub="partner-9")
        with pytest.raises(IdentityAlreadyLinkedElsewhere):
            await orchestrator.link_account(login.session.session_id, "partner", code, state)

    @pytest.mark.asyncio
    async def test_link_requires_valid_session(self, orchestrator, idp):
        state, nonce = await start_login(orchestrator, "partner")
        code = idp.issue_code(nonce, sub="partner-9")

        with pytest.raises(SessionNotFound):
            await orchestrator.link_account("missing", "partner", code, state)
        # The login request was not spent on the rejected link
        assert await orchestrator.state_store.consume(state)

    @pytest.mark.asyncio
    async def test_linking_disabled(self, settings, secret_provider, http_client, acme, idp):
        runtime = build_runtime(
            settings.model_copy(update={"allow_account_linking": False}),
            secret_provider=secret_provider,
            http_client=http_client,
            registry=ProviderRegistry([acme]),
            use_database=False,
        )
        login = await sign_in(runtime.orchestrator, idp)

        with pytest.raises(AccountLinkingDisabled):
            await runtime.orchestrator.link_account(login.session.session_id, "acme", "c", "s")
        await runtime.aclose()


class TestProviderCatalog:
    @pytest.fixture
    async def builtin(self, settings, secret_provider, http_client):
        """Runtime over the built-in providers."""
        runtime = build_runtime(
            settings, secret_provider=secret_provider, http_client=http_client, use_database=False
        )
        try:
            yield runtime.orchestrator
        finally:
            await runtime.aclose()

    @pytest.mark.asyncio
    async def test_list_providers(self, builtin):
        providers = {p.provider_id: p for p in builtin.list_providers()}

        assert set(providers) == {"google", "facebook", "apple", "azure_b2c"}
        assert providers["azure_b2c"].capabilities.supports_password_reset is True
        assert providers["facebook"].capabilities.supports_logout is False
        assert providers["google"].default_scopes == ["openid", "email", "profile"]

    @pytest.mark.asyncio
    async def test_filter_by_capability(self, builtin):
        providers = builtin.list_providers(capability="supports_password_reset")

        assert [p.provider_id for p in providers] == ["azure_b2c"]

    @pytest.mark.asyncio
    async def test_unknown_capability(self, builtin):
        with pytest.raises(ValueError):
            builtin.list_providers(capability="supports_teleportation")

    @pytest.mark.asyncio
    async def test_get_provider_info(self, builtin):
        info = builtin.get_provider_info("apple")

        assert info.display_name == "Apple"
        assert info.capabilities.supports_profile_editing is False
        with pytest.raises(UnknownProvider):
            builtin.get_provider_info("myspace")

    @pytest.mark.asyncio
    async def test_enabled_only(self, orchestrator):
        assert [p.provider_id for p in orchestrator.list_providers(enabled_only=True)] == [
            "acme",
            "partner",
        ]

    @pytest.mark.asyncio
    async def test_validate_configured_providers(self, builtin):
        assert builtin.validate_provider_config("google").valid
        assert builtin.validate_provider_config("facebook").valid
        assert builtin.validate_provider_config("azure_b2c").valid

        apple = builtin.validate_provider_config("apple")
        assert not apple.valid
        assert apple.errors == ["secret 'apple_private_key' is not available"]

    @pytest.mark.asyncio
    async def test_validate_incomplete_b2c(self, settings, http_client):
        """Unset tenant values leave empty path segments in endpoints and issuer."""
        incomplete = settings.model_copy(update={"azure_b2c_tenant": "", "azure_b2c_tenant_id": ""})
        runtime = build_runtime(
            incomplete,
            secret_provider=StaticSecretProvider({}),
            http_client=http_client,
            registry=build_registry(incomplete),
            use_database=False,
        )

        result = runtime.orchestrator.validate_provider_config("azure_b2c")

        assert not result.valid
        assert "endpoint or issuer is incomplete (tenant or policy missing)" in result.errors
        assert "secret 'azure_b2c_client_secret' is not available" in result.errors
        await runtime.aclose()

    @pytest.mark.asyncio
    async def test_validate_unknown(self, orchestrator):
        with pytest.raises(UnknownProvider):
            orchestrator.validate_provider_config("nope")

    @pytest.mark.asyncio
    async def test_password_reset_url(self, builtin):
        url = await builtin.begin_password_reset("azure_b2c", "/account")

        assert "/B2C_1_passwordreset/oauth2/v2.0/authorize" in url


class TestDatabaseRuntime:
    """The same flow with state, sessions and audit persisted in SQLite."""

    @pytest.fixture
    async def db_runtime(self, settings, secret_provider, http_client, acme, tmp_path):
        runtime = build_runtime(
            settings.model_copy(update={"database_url": f"sqlite+aiosqlite:///{tmp_path}/auth.db"}),
            secret_provider=secret_provider,
            http_client=http_client,
            registry=ProviderRegistry([acme]),
        )
        await runtime.start(run_scheduler=False)
        try:
            yield runtime
        finally:
            await runtime.aclose()

    @pytest.mark.asyncio
    async def test_login_persists_and_audits(self, db_runtime, idp):
        orchestrator = db_runtime.orchestrator

        login = await sign_in(orchestrator, idp, return_url="/home")
        session_id = login.session.session_id
        assert login.return_url == "/home"
        assert (await orchestrator.validate_session(session_id)).version == 2

        state, _ = await start_login(orchestrator)
        with pytest.raises(InvalidGrant):
            await orchestrator.complete_login("acme", "", state, error="access_denied")

        await orchestrator.logout(session_id)

        async with create_session_maker(db_runtime.engine)() as db:
            events = [e.event_type for e in await AuditLogRepository(db).get_recent()]
        assert events == ["logout", "login_failed", "login_succeeded"]

    @pytest.mark.asyncio
    async def test_replayed_state_against_database(self, db_runtime, idp):
        state, nonce = await start_login(db_runtime.orchestrator)
        code = idp.issue_code(nonce)

        await db_runtime.orchestrator.complete_login("acme", code, state)
        with pytest.raises(StateMismatchError):
            await db_runtime.orchestrator.complete_login("acme", code, state)

    @pytest.mark.asyncio
    async def test_maintenance_sweep(self, db_runtime, idp):
        await sign_in(db_runtime.orchestrator, idp)

        sweep = await db_runtime.scheduler.run_sweep()

        assert set(sweep) == {"authorization_requests", "sessions", "jwks", "audit_logs"}
        assert all(count >= 0 for count in sweep.values())
