"""Wiring: build every component from ``Settings`` and own their lifecycle."""

import logging

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from multiauth.config import Settings, get_settings
from multiauth.db import create_engine, create_session_maker, init_db
from multiauth.log_setup import configure_logging
from multiauth.providers.registry import ProviderRegistry, build_registry
from multiauth.services.audit import AuditLogger, NullAuditLogger
from multiauth.services.jwks_cache import JwksCache
from multiauth.services.linking import AccountLinkingService
from multiauth.services.normalizer import UserInfoNormalizer
from multiauth.services.orchestrator import AuthOrchestrator
from multiauth.services.scheduler import MaintenanceScheduler
from multiauth.services.secrets import EnvironmentSecretProvider, SecretProvider
from multiauth.services.session_manager import SessionManager
from multiauth.services.session_store import (
    DatabaseSessionStore,
    MemorySessionStore,
    SessionStore,
)
from multiauth.services.state_store import (
    AntiForgeryStateStore,
    DatabaseStateBackend,
    MemoryStateBackend,
    StateBackend,
)
from multiauth.services.token_client import TokenExchangeClient
from multiauth.services.token_validator import IdentityTokenValidator
from multiauth.services.url_builder import AuthorizationUrlBuilder

logger = logging.getLogger(__name__)


class AuthRuntime:
    """Owns the HTTP client, database engine, caches and scheduler."""

    def __init__(
        self,
        settings: Settings,
        orchestrator: AuthOrchestrator,
        jwks_cache: JwksCache,
        scheduler: MaintenanceScheduler,
        http_client: httpx.AsyncClient,
        engine: AsyncEngine | None = None,
        owns_http_client: bool = True,
    ):
        self.settings = settings
        self.orchestrator = orchestrator
        self.jwks_cache = jwks_cache
        self.scheduler = scheduler
        self.http_client = http_client
        self.engine = engine
        self._owns_http_client = owns_http_client

    async def start(self, run_scheduler: bool = True) -> None:
        """Create tables, report provider configuration problems and start the sweep."""
        if self.engine is not None:
            await init_db(self.engine)

        for info in self.orchestrator.list_providers(enabled_only=True):
            result = self.orchestrator.validate_provider_config(info.provider_id)
            if not result.valid:
                logger.warning(
                    f"Provider {info.provider_id} is misconfigured: {'; '.join(result.errors)}"
                )

        if run_scheduler:
            self.scheduler.start()
        logger.info(f"{self.settings.app_name} authentication runtime started")

    async def aclose(self) -> None:
        """Stop the scheduler and release network and database resources."""
        self.scheduler.stop()
        self.jwks_cache.clear()
        if self._owns_http_client:
            await self.http_client.aclose()
        if self.engine is not None:
            await self.engine.dispose()
        logger.info("Authentication runtime stopped")

    async def __aenter__(self) -> "AuthRuntime":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()


def build_runtime(
    settings: Settings | None = None,
    *,
    secret_provider: SecretProvider | None = None,
    http_client: httpx.AsyncClient | None = None,
    registry: ProviderRegistry | None = None,
    use_database: bool = True,
) -> AuthRuntime:
    """
    Construct every component.

    Args:
        settings: Settings (defaults to the process-wide instance)
        secret_provider: Secret source (defaults to environment + /run/secrets)
        http_client: Shared outbound client; created (and owned) if omitted
        registry: Provider registry (defaults to the built-in providers)
        use_database: Persist state, sessions and audit in ``database_url``;
            otherwise keep everything in process memory

    Returns:
        AuthRuntime, not yet started
    """
    settings = settings or get_settings()
    configure_logging(settings)
    secret_provider = secret_provider or EnvironmentSecretProvider("/run/secrets")
    registry = registry or build_registry(settings)

    owns_http_client = http_client is None
    if http_client is None:
        http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(settings.http_timeout_seconds),
            follow_redirects=False,
        )

    engine: AsyncEngine | None = None
    state_backend: StateBackend
    session_store: SessionStore
    audit: AuditLogger
    if use_database:
        engine = create_engine(settings.database_url)
        session_maker: async_sessionmaker[AsyncSession] = create_session_maker(engine)
        state_backend = DatabaseStateBackend(session_maker)
        session_store = DatabaseSessionStore(session_maker)
        audit = AuditLogger(session_maker) if settings.audit_enabled else NullAuditLogger()
    else:
        state_backend = MemoryStateBackend()
        session_store = MemorySessionStore()
        audit = NullAuditLogger()

    state_store = AntiForgeryStateStore(state_backend, ttl_minutes=settings.state_ttl_minutes)
    url_builder = AuthorizationUrlBuilder(registry, state_store, settings)
    token_client = TokenExchangeClient(
        http_client,
        secret_provider,
        timeout=settings.http_timeout_seconds,
        max_retries=settings.token_exchange_max_retries,
        backoff_base=settings.token_exchange_backoff_base,
        backoff_max=settings.token_exchange_backoff_max,
    )
    jwks_cache = JwksCache(
        http_client,
        ttl_seconds=settings.jwks_cache_ttl_seconds,
        min_refresh_interval_seconds=settings.jwks_min_refresh_interval_seconds,
        timeout=settings.http_timeout_seconds,
    )
    token_validator = IdentityTokenValidator(jwks_cache, clock_skew_seconds=settings.clock_skew_seconds)
    normalizer = UserInfoNormalizer(http_client, timeout=settings.http_timeout_seconds)
    sessions = SessionManager(
        session_store,
        token_client,
        registry,
        ttl_minutes=settings.session_ttl_minutes,
        audit=audit,
    )
    linking = AccountLinkingService(sessions, enabled=settings.allow_account_linking, audit=audit)

    orchestrator = AuthOrchestrator(
        registry=registry,
        state_store=state_store,
        url_builder=url_builder,
        token_client=token_client,
        token_validator=token_validator,
        normalizer=normalizer,
        sessions=sessions,
        linking=linking,
        secret_provider=secret_provider,
        audit=audit,
    )

    retention_days = settings.audit_retention_days

    async def purge_audit() -> int:
        return await audit.purge_older_than(retention_days)

    scheduler = MaintenanceScheduler(
        {
            "authorization_requests": state_store.purge_expired,
            "sessions": sessions.purge_expired,
            "jwks": jwks_cache.refresh_stale,
            "audit_logs": purge_audit,
        },
        interval_seconds=settings.sweep_interval_seconds,
    )

    return AuthRuntime(
        settings=settings,
        orchestrator=orchestrator,
        jwks_cache=jwks_cache,
        scheduler=scheduler,
        http_client=http_client,
        engine=engine,
        owns_http_client=owns_http_client,
    )
