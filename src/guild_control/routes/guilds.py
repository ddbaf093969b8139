"""Guild lifecycle HTTP API.

  POST   /api/v1/guilds/{guild_id}/provision         (admin) provision any tier
  POST   /api/v1/guilds/{guild_id}/provision/free    user free-tier provisioning
  POST   /api/v1/internal/guilds/{guild_id}/created  (admin) guild-created event
  POST   /api/v1/guilds/{guild_id}/restart
  POST   /api/v1/guilds/{guild_id}/repair
  POST   /api/v1/guilds/{guild_id}/deploy
  POST   /api/v1/admin/guilds/{guild_id}/deploy      (admin) deploy without ownership
  POST   /api/v1/guilds/{guild_id}/upgrade
  POST   /api/v1/admin/free-tier                     (admin) create capacity document
  PATCH  /api/v1/admin/free-tier                     (admin) resize the slot pool
  DELETE /api/v1/guilds/{guild_id}
  DELETE /api/v1/me
  GET    /api/v1/guilds/{guild_id}/status
  GET    /api/v1/guilds/{guild_id}/logs
  GET    /api/v1/guilds/{guild_id}                   deployment info
  GET    /api/v1/guilds                              caller's provisioned guilds

User-facing endpoints read the caller from ``X-User-ID`` (set by the
authenticating gateway). Admin endpoints require ``X-Admin-Token``.
Errors raised by the orchestrator are rendered by the app-level handler.
"""

from __future__ import annotations

import hmac
from dataclasses import asdict

from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel, Field

from ..errors import PermissionDeniedError, UnauthenticatedError
from ..provisioning.admission import DEFAULT_MAX_SLOTS
from ..provisioning.orchestrator import GuildOrchestrator
from ..provisioning.tiers import DEFAULT_FREE_TIER_QUERIES


# ── Request schemas ───────────────────────────────────────────────────


class DeployRequest(BaseModel):
    version: str = Field(
        min_length=1,
        max_length=128,
        description='Image tag to deploy, e.g. "1.4.2" or "latest".',
    )


class UpgradeRequest(BaseModel):
    tier: str = Field(min_length=1, description='Target paid tier.')
    subscription_id: str | None = None


class FreeTierInitRequest(BaseModel):
    max_slots: int = Field(default=DEFAULT_MAX_SLOTS, ge=0)
    queries_per_slot: int = Field(default=DEFAULT_FREE_TIER_QUERIES, gt=0)


class FreeTierAdjustRequest(BaseModel):
    max_slots: int = Field(ge=0)


# ── Route factory ─────────────────────────────────────────────────────


def create_guilds_router(
    orchestrator: GuildOrchestrator,
    *,
    admin_token: str,
) -> APIRouter:
    """Create the guild lifecycle router.

    Args:
        orchestrator: Lifecycle orchestrator every endpoint delegates to.
        admin_token: Shared secret for admin endpoints. Empty disables them.
    """
    router = APIRouter(tags=['guilds'])

    async def require_user(x_user_id: str = Header(default='')) -> str:
        user_id = x_user_id.strip()
        if not user_id:
            raise UnauthenticatedError('Authentication required')
        return user_id

    async def require_admin(x_admin_token: str = Header(default='')) -> None:
        if not admin_token or not hmac.compare_digest(
            x_admin_token.encode(), admin_token.encode(),
        ):
            raise PermissionDeniedError('Invalid admin token')

    # ── Provisioning ──────────────────────────────────────────────

    @router.post(
        '/api/v1/guilds/{guild_id}/provision',
        dependencies=[Depends(require_admin)],
    )
    async def provision_guild(guild_id: str):
        result = await orchestrator.provision_guild(guild_id)
        return {'success': True, **asdict(result)}

    @router.post('/api/v1/guilds/{guild_id}/provision/free')
    async def provision_free_tier_guild(
        guild_id: str,
        user_id: str = Depends(require_user),
    ):
        result = await orchestrator.provision_free_tier_guild(user_id, guild_id)
        return {'success': True, **asdict(result)}

    @router.post(
        '/api/v1/internal/guilds/{guild_id}/created',
        dependencies=[Depends(require_admin)],
    )
    async def guild_created(guild_id: str, claimed: bool = False):
        """Guild-created event hook; always 200 so the sender does not retry.

        ``?claimed=true`` when the sender already set status=provisioning.
        """
        result = await orchestrator.handle_guild_created(guild_id, claimed=claimed)
        return {
            'provisioned': result is not None,
            **(asdict(result) if result is not None else {}),
        }

    # ── Operational commands ──────────────────────────────────────

    @router.post('/api/v1/guilds/{guild_id}/restart')
    async def restart_guild(guild_id: str, user_id: str = Depends(require_user)):
        result = await orchestrator.restart_guild(user_id, guild_id)
        return {'success': True, **asdict(result)}

    @router.post('/api/v1/guilds/{guild_id}/repair')
    async def repair_guild(guild_id: str, user_id: str = Depends(require_user)):
        result = await orchestrator.repair_guild(user_id, guild_id)
        return {'success': True, **asdict(result)}

    @router.post('/api/v1/guilds/{guild_id}/deploy')
    async def deploy_guild_update(
        guild_id: str,
        body: DeployRequest,
        user_id: str = Depends(require_user),
    ):
        result = await orchestrator.deploy_guild_update(user_id, guild_id, body.version)
        return {'success': True, **asdict(result)}

    @router.post(
        '/api/v1/admin/guilds/{guild_id}/deploy',
        dependencies=[Depends(require_admin)],
    )
    async def admin_deploy_guild_bot(guild_id: str, body: DeployRequest):
        result = await orchestrator.admin_deploy_guild_bot(guild_id, body.version)
        return {'success': True, **asdict(result)}

    # ── Tier and capacity ─────────────────────────────────────────

    @router.post('/api/v1/guilds/{guild_id}/upgrade')
    async def upgrade_guild(
        guild_id: str,
        body: UpgradeRequest,
        user_id: str = Depends(require_user),
    ):
        result = await orchestrator.upgrade_guild(
            user_id, guild_id, body.tier, subscription_id=body.subscription_id,
        )
        return {'success': True, **asdict(result)}

    @router.post(
        '/api/v1/admin/free-tier',
        dependencies=[Depends(require_admin)],
    )
    async def initialize_free_tier_config(body: FreeTierInitRequest):
        config = await orchestrator.admission.initialize_free_tier_config(
            body.max_slots, body.queries_per_slot,
        )
        return {'success': True, 'config': config}

    @router.patch(
        '/api/v1/admin/free-tier',
        dependencies=[Depends(require_admin)],
    )
    async def adjust_free_tier_slots(body: FreeTierAdjustRequest):
        config = await orchestrator.admission.adjust_free_tier_slots(body.max_slots)
        return {'success': True, 'config': config}

    # ── Teardown ──────────────────────────────────────────────────

    @router.delete('/api/v1/guilds/{guild_id}')
    async def deprovision_guild(guild_id: str, user_id: str = Depends(require_user)):
        result = await orchestrator.deprovision_guild(user_id, guild_id)
        return {'success': True, 'warnings': list(result.warnings)}

    @router.delete('/api/v1/me')
    async def delete_user_account(user_id: str = Depends(require_user)):
        result = await orchestrator.delete_user_account(user_id)
        return {
            'success': not result.errors,
            'deleted_guild_count': result.deleted_guild_count,
            'errors': list(result.errors),
        }

    # ── Observation ───────────────────────────────────────────────

    @router.get('/api/v1/guilds/{guild_id}/status')
    async def get_guild_status(guild_id: str, user_id: str = Depends(require_user)):
        return await orchestrator.get_guild_status(user_id, guild_id)

    @router.get('/api/v1/guilds/{guild_id}/logs')
    async def get_guild_logs(guild_id: str, user_id: str = Depends(require_user)):
        return await orchestrator.get_guild_logs(user_id, guild_id)

    @router.get('/api/v1/guilds/{guild_id}')
    async def get_guild_deployment_info(guild_id: str, user_id: str = Depends(require_user)):
        return await orchestrator.get_guild_deployment_info(user_id, guild_id)

    @router.get('/api/v1/guilds')
    async def list_user_guilds(user_id: str = Depends(require_user)):
        return {'guilds': await orchestrator.list_user_guilds(user_id)}

    return router
