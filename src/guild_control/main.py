"""Guild control plane FastAPI application factory.

The create_app() factory is the single entry point for building the ASGI
application. It wires middleware (request-ID), the error mapping and the
guild routes, and injects collaborator implementations.

Usage:
    # Local development (in-memory everything)
    from guild_control import create_app, GuildControlSettings
    app = create_app(GuildControlSettings())

    # Non-local (Supabase, machines API and Stripe built from settings)
    app = create_app(GuildControlSettings.from_env())

    # Testing (full DI control)
    app = create_app(settings, guilds=fake_guilds, platform=fake_platform, ...)
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, fields, replace
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .db import SupabaseError
from .errors import GuildControlError
from .observability import RequestIdMiddleware, configure_logging
from .protocols import (
    BillingProvider,
    DeploymentRepository,
    FreeTierCapacityStore,
    GuildRepository,
    IdentityProvider,
    MachinePlatform,
    SecretStore,
    SubscriptionRepository,
    UserRepository,
)
from .providers.machines_client import RemoteAPIError
from .provisioning.orchestrator import GuildOrchestrator
from .settings import GuildControlSettings

logger = logging.getLogger(__name__)

ERROR_STATUS: dict[str, int] = {
    "unauthenticated": 401,
    "permission_denied": 403,
    "not_found": 404,
    "failed_precondition": 409,
    "already_exists": 409,
    "invalid_argument": 400,
    "resource_exhausted": 429,
    "internal": 500,
}


@dataclass(frozen=True)
class AppDependencies:
    """Container for all injected collaborator instances.

    Stored on ``app.state.deps`` so route handlers and tests can reach them.
    """

    guilds: GuildRepository
    deployments: DeploymentRepository
    capacity: FreeTierCapacityStore
    subscriptions: SubscriptionRepository
    users: UserRepository
    identity: IdentityProvider
    billing: BillingProvider
    secrets: SecretStore
    platform: MachinePlatform


def _build_inmemory_deps() -> AppDependencies:
    """Construct all-InMemory dependencies for local development."""
    from .inmemory import (
        InMemoryBillingProvider,
        InMemoryDeploymentRepository,
        InMemoryFreeTierCapacityStore,
        InMemoryGuildRepository,
        InMemoryIdentityProvider,
        InMemoryMachinePlatform,
        InMemorySubscriptionRepository,
        InMemoryUserRepository,
    )
    from .security.secrets import (
        SHARED_ANTHROPIC_API_KEY,
        SHARED_DISCORD_BOT_TOKEN,
        StaticSecretStore,
    )

    deployments = InMemoryDeploymentRepository()
    return AppDependencies(
        guilds=InMemoryGuildRepository(deployments),
        deployments=deployments,
        capacity=InMemoryFreeTierCapacityStore(
            {"max_slots": 10, "used_slots": 0, "queries_per_slot": 25},
        ),
        subscriptions=InMemorySubscriptionRepository(),
        users=InMemoryUserRepository(),
        identity=InMemoryIdentityProvider(),
        billing=InMemoryBillingProvider(),
        secrets=StaticSecretStore(
            {
                SHARED_DISCORD_BOT_TOKEN: "local-discord-token",
                SHARED_ANTHROPIC_API_KEY: "local-anthropic-key",
            }
        ),
        platform=InMemoryMachinePlatform(),
    )


def _build_remote_deps(settings: GuildControlSettings) -> AppDependencies:
    """Construct Supabase/machines API/Stripe dependencies from settings."""
    from .billing import StripeBillingProvider
    from .db import (
        SupabaseClient,
        SupabaseDeploymentRepository,
        SupabaseFreeTierCapacityStore,
        SupabaseGuildRepository,
        SupabaseIdentityProvider,
        SupabaseSubscriptionRepository,
        SupabaseUserRepository,
    )
    from .providers import MachinesClient
    from .security.secrets import EnvSecretStore

    client = SupabaseClient(
        supabase_url=settings.supabase_url,
        service_role_key=settings.supabase_service_role_key,
    )
    secrets = EnvSecretStore()
    return AppDependencies(
        guilds=SupabaseGuildRepository(client),
        deployments=SupabaseDeploymentRepository(client),
        capacity=SupabaseFreeTierCapacityStore(client),
        subscriptions=SupabaseSubscriptionRepository(client),
        users=SupabaseUserRepository(client),
        identity=SupabaseIdentityProvider(client),
        billing=StripeBillingProvider(secrets=secrets),
        secrets=secrets,
        platform=MachinesClient(
            secrets=secrets,
            base_url=settings.machines_api_url,
            org_slug=settings.fly_org,
        ),
    )


# ── Error mapping ───────────────────────────────────────────────────


def _error_response(request: Request, status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "code": code,
            "message": message,
            "request_id": getattr(request.state, "request_id", None),
        },
    )


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(GuildControlError)
    async def guild_control_error(request: Request, exc: GuildControlError):
        return _error_response(
            request, ERROR_STATUS.get(exc.code, 500), exc.code, exc.message,
        )

    @app.exception_handler(RemoteAPIError)
    async def remote_api_error(request: Request, exc: RemoteAPIError):
        return _error_response(request, 502, "remote_error", str(exc))

    @app.exception_handler(SupabaseError)
    async def storage_error(request: Request, exc: SupabaseError):
        logger.error(
            "Storage error on %s",
            request.url.path,
            extra={"status_code": exc.status_code, "db_code": exc.code},
        )
        return _error_response(request, 502, "storage_error", "Storage request failed")


# ── Factory ─────────────────────────────────────────────────────────


def create_app(
    settings: GuildControlSettings | None = None,
    *,
    configure_logs: bool = True,
    orchestrator: GuildOrchestrator | None = None,
    **overrides: Any,
) -> FastAPI:
    """Create a configured guild control plane FastAPI application.

    Args:
        settings: Application settings. Defaults to local-dev settings.
        configure_logs: Install the structlog formatter on the root logger.
        orchestrator: Prebuilt orchestrator (tests). Built from the
            dependencies otherwise.
        **overrides: Collaborator overrides keyed by ``AppDependencies``
            field name. Missing ones are InMemory in local mode and built
            from settings otherwise.

    Raises:
        ValueError: If settings validation fails or an override name is unknown.
    """
    if settings is None:
        settings = GuildControlSettings()

    errors = settings.validate()
    if errors:
        raise ValueError(
            "Guild control settings validation failed:\n"
            + "\n".join(f"  - {e}" for e in errors)
        )

    known = {f.name for f in fields(AppDependencies)}
    unknown = sorted(set(overrides) - known)
    if unknown:
        raise ValueError(f"Unknown dependency overrides: {', '.join(unknown)}")

    if configure_logs:
        configure_logging()

    defaults = _build_inmemory_deps() if settings.is_local else _build_remote_deps(settings)
    deps = replace(defaults, **{k: v for k, v in overrides.items() if v is not None})

    if orchestrator is None:
        orchestrator = GuildOrchestrator(
            settings=settings,
            guilds=deps.guilds,
            deployments=deps.deployments,
            capacity=deps.capacity,
            subscriptions=deps.subscriptions,
            users=deps.users,
            identity=deps.identity,
            billing=deps.billing,
            secrets=deps.secrets,
            platform=deps.platform,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Guild control plane startup (environment=%s)", settings.environment)
        yield
        pending = orchestrator.background.pending
        if pending:
            logger.info("Cancelling %d readiness task(s)", pending)
        await orchestrator.background.shutdown()
        logger.info("Guild control plane shutdown")

    app = FastAPI(
        title="Guild Control Plane",
        description="Provisioning and lifecycle API for per-guild bot machines",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.deps = deps
    app.state.settings = settings
    app.state.orchestrator = orchestrator

    app.add_middleware(RequestIdMiddleware)
    _register_error_handlers(app)

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "environment": settings.environment,
        }

    from .routes.guilds import create_guilds_router
    app.include_router(create_guilds_router(orchestrator, admin_token=settings.admin_token))

    return app


# For uvicorn, use --factory flag:
#   uvicorn guild_control.main:create_app --factory
