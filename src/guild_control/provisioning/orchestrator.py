"""Guild lifecycle orchestrator.

Owns every guild status transition after the guild document is created in
``pending``:

  provision:   guards -> (free tier: reserve slot) -> status=provisioning
               -> create app -> create volume -> create machine
               -> commit handles + deployment record -> spawn readiness poller
  commands:    restart / repair / deploy share one apply-config primitive
  upgrade:     tier + quota reset on a provisioned guild, lifts suspension
  teardown:    status=deprovisioning -> cancel subscription -> delete app
               -> delete deployment record -> delete guild

Guard failures raise before any side effect. Failures after the guild was
claimed run the matching compensation (slot release, partial app cleanup,
status=error) and re-raise the original error. Compensation never raises.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Collection

from ..errors import (
    AlreadyExistsError,
    FailedPreconditionError,
    InternalError,
    InvalidArgumentError,
    NotFoundError,
    describe_error,
)
from ..providers.machines_client import RemoteNotFoundError
from ..security.ownership import verify_ownership
from ..security.secrets import SHARED_ANTHROPIC_API_KEY, SHARED_DISCORD_BOT_TOKEN
from ..settings import GuildControlSettings
from . import tiers
from .admission import FreeTierAdmission, SlotReservation
from .environment import (
    build_environment,
    build_machine_spec,
    compute_desired_config,
    image_ref,
)
from .readiness import BackgroundTasks, ReadinessPoller
from .state_machine import (
    ACTIVE,
    DEPROVISION_FROM,
    DEPROVISIONING,
    ERROR,
    MACHINE_COMMAND_FROM,
    PENDING,
    PROVISION_FROM,
    PROVISION_RECLAIM_FROM,
    PROVISIONING,
    SUSPENDED,
    UPGRADE_FROM,
    InvalidStatusTransition,
    require_transition,
)

logger = logging.getLogger(__name__)

APP_NAME_PREFIX = "cordbot-guild"
VOLUME_NAME_PREFIX = "cordbot_vol"

_APP_TOKEN_RE = re.compile(r"[^a-z0-9]")
_VOLUME_TOKEN_RE = re.compile(r"[^a-z0-9_]")
_IMAGE_TAG_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")

BILLING_PERIOD = timedelta(days=30)


def build_app_name(guild_id: str) -> str:
    """Deterministic app name so repeated attempts target the same app."""
    token = _APP_TOKEN_RE.sub("", guild_id[:12].lower())
    if not token:
        raise InvalidArgumentError(f"cannot derive an app name from guild id {guild_id!r}")
    return f"{APP_NAME_PREFIX}-{token}"


def build_volume_name(guild_id: str) -> str:
    token = _VOLUME_TOKEN_RE.sub("_", guild_id[:8].lower())
    return f"{VOLUME_NAME_PREFIX}_{token}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Results ─────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class ProvisionResult:
    app_name: str
    machine_id: str
    volume_id: str
    region: str


@dataclass(frozen=True, slots=True)
class MachineCommand:
    """Parameters of the shared apply-config primitive.

    ``image_tag`` None keeps the machine's current image.
    """

    name: str
    failure_label: str
    image_tag: str | None = None
    force_restart: bool = False


RESTART = MachineCommand(
    name="restart",
    failure_label="Failed to restart guild",
    force_restart=True,
)
REPAIR = MachineCommand(
    name="repair",
    failure_label="Failed to repair guild",
    force_restart=True,
)


def deploy_command(version: str) -> MachineCommand:
    return MachineCommand(
        name="deploy",
        failure_label="Failed to deploy update",
        image_tag=version,
    )


@dataclass(frozen=True, slots=True)
class CommandResult:
    guild_id: str
    command: str
    image: str
    restarted: bool


@dataclass(frozen=True, slots=True)
class UpgradeResult:
    guild_id: str
    previous_tier: str
    tier: str
    queries_total: int
    status: str


@dataclass(frozen=True, slots=True)
class DeprovisionResult:
    guild_id: str
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class AccountDeletionResult:
    deleted_guild_count: int
    errors: tuple[str, ...] = field(default_factory=tuple)


# ── Orchestrator ────────────────────────────────────────────────────


class GuildOrchestrator:
    """Provision, operate and tear down guild compute units."""

    def __init__(
        self,
        *,
        settings: GuildControlSettings,
        guilds: Any,
        deployments: Any,
        capacity: Any,
        subscriptions: Any,
        users: Any,
        identity: Any,
        billing: Any,
        secrets: Any,
        platform: Any,
        clock: Callable[[], datetime] | None = None,
        background: BackgroundTasks | None = None,
        poller: ReadinessPoller | None = None,
    ) -> None:
        self._settings = settings
        self._guilds = guilds
        self._deployments = deployments
        self._subscriptions = subscriptions
        self._users = users
        self._identity = identity
        self._billing = billing
        self._secrets = secrets
        self._platform = platform
        self._clock = clock or _utcnow
        self._admission = FreeTierAdmission(capacity)
        self._background = background or BackgroundTasks()
        self._poller = poller or ReadinessPoller(
            platform=platform,
            guilds=guilds,
            clock=self._clock,
            interval_seconds=settings.poll_interval_seconds,
            max_attempts=settings.poll_max_attempts,
        )

    @property
    def background(self) -> BackgroundTasks:
        return self._background

    @property
    def admission(self) -> FreeTierAdmission:
        return self._admission

    def _now(self) -> str:
        return self._clock().isoformat()

    # ── Provisioning ────────────────────────────────────────────────

    async def provision_guild(
        self,
        guild_id: str,
        *,
        already_claimed: bool = False,
    ) -> ProvisionResult:
        """Provision a guild of any tier.

        Free-tier guilds go through slot admission; paid tiers need an
        active subscription. ``already_claimed`` is for callers that set
        status=provisioning themselves before handing over.

        Raises:
            NotFoundError, AlreadyExistsError, FailedPreconditionError,
            ResourceExhaustedError: guard failures, nothing changed.
            RemoteAPIError and others: creation failures, guild left in
                ``error`` with the message recorded.
        """
        guild = await self._load_for_provisioning(guild_id, already_claimed=already_claimed)
        reservation: SlotReservation | None = None
        if tiers.is_paid(guild.get("tier")):
            await self._require_active_subscription(guild)
        else:
            reservation = await self._admission.reserve_free_tier_slot(guild_id)
        return await self._run_provisioning(
            guild, reservation=reservation, already_claimed=already_claimed,
        )

    async def provision_free_tier_guild(self, user_id: str, guild_id: str) -> ProvisionResult:
        """User-initiated free-tier provisioning (ownership checked)."""
        await verify_ownership(self._guilds, user_id, guild_id)
        guild = await self._load_for_provisioning(guild_id, already_claimed=False)
        if tiers.is_paid(guild.get("tier")):
            raise FailedPreconditionError("Guild is not on the free tier")
        reservation = await self._admission.reserve_free_tier_slot(guild_id)
        return await self._run_provisioning(guild, reservation=reservation, already_claimed=False)

    async def handle_guild_created(
        self,
        guild_id: str,
        *,
        claimed: bool = False,
    ) -> ProvisionResult | None:
        """Entry point for the guild-created event.

        Only ``pending`` guilds are provisioned, so redelivered events are
        ignored. With ``claimed`` the publisher has already written
        status=provisioning, and a guild in that status with no deployment
        record is picked up instead. Never raises; a guard failure is
        recorded on the guild.
        """
        entry = PROVISIONING if claimed else PENDING
        guild = await self._guilds.get_guild(guild_id)
        if guild is None:
            logger.error("Guild %s not found for auto-provisioning", guild_id, extra={"guild_id": guild_id})
            return None
        if guild.get("status") != entry:
            logger.info(
                "Guild %s status is %s, skipping auto-provisioning",
                guild_id,
                guild.get("status"),
                extra={"guild_id": guild_id},
            )
            return None
        if claimed and await self._deployments.get_guild_deployment(guild_id) is not None:
            # Redelivery while the first attempt is still waiting for readiness.
            logger.info(
                "Guild %s already has a deployment, skipping auto-provisioning",
                guild_id,
                extra={"guild_id": guild_id},
            )
            return None

        try:
            return await self.provision_guild(guild_id, already_claimed=claimed)
        except Exception as exc:
            logger.exception("Auto-provisioning failed for guild %s", guild_id, extra={"guild_id": guild_id})
            await self._record_failure(
                guild_id,
                f"Auto-provisioning failed: {describe_error(exc)}",
                expected=(entry,),
            )
            return None

    async def _load_for_provisioning(self, guild_id: str, *, already_claimed: bool) -> dict[str, Any]:
        guild = await self._guilds.get_guild(guild_id)
        if guild is None:
            raise NotFoundError("Guild not found")

        status = guild.get("status")
        if status == ACTIVE:
            raise AlreadyExistsError("Guild is already provisioned")
        expected = PROVISION_RECLAIM_FROM if already_claimed else PROVISION_FROM
        if status not in expected:
            raise _status_conflict(status)

        try:
            tiers.normalize_tier(guild.get("tier"))
        except ValueError as exc:
            raise FailedPreconditionError(str(exc)) from exc

        if await self._deployments.get_guild_deployment(guild_id) is not None:
            raise AlreadyExistsError("Guild is already provisioned")
        return guild

    async def _require_active_subscription(self, guild: dict[str, Any]) -> None:
        guild_id = guild["id"]
        subscription_id = guild.get("subscription_id")
        if not subscription_id:
            logger.error(
                "Paid tier guild %s has no subscription id",
                guild_id,
                extra={"guild_id": guild_id, "tier": guild.get("tier")},
            )
            raise FailedPreconditionError("Paid tier guild must have an active subscription")

        subscription = await self._subscriptions.get_subscription(subscription_id)
        if subscription is None or subscription.get("status") != "active":
            logger.error(
                "Paid tier guild %s subscription not active",
                guild_id,
                extra={
                    "guild_id": guild_id,
                    "subscription_id": subscription_id,
                    "subscription_status": (subscription or {}).get("status"),
                },
            )
            raise FailedPreconditionError("Subscription must be active to provision guild")

    async def _run_provisioning(
        self,
        guild: dict[str, Any],
        *,
        reservation: SlotReservation | None,
        already_claimed: bool,
    ) -> ProvisionResult:
        guild_id = guild["id"]
        now = self._now()
        try:
            await self._claim(
                guild,
                PROVISION_RECLAIM_FROM if already_claimed else PROVISION_FROM,
                {
                    "status": PROVISIONING,
                    "error_message": None,
                    "last_deployed_at": now,
                    "updated_at": now,
                },
            )
        except Exception:
            if reservation is not None:
                await self._admission.release_free_tier_slot(reservation)
            raise
        logger.info("Set guild %s status to provisioning", guild_id, extra={"guild_id": guild_id})

        created_app: list[str] = []
        try:
            result = await self._create_remote_unit(guild, reservation, created_app)
        except Exception as exc:
            logger.exception("Failed to provision guild %s", guild_id, extra={"guild_id": guild_id})
            if reservation is not None:
                await self._admission.release_free_tier_slot(reservation)
            for app_name in created_app:
                await self._best_effort(
                    f"clean up app {app_name}",
                    lambda: self._platform.delete_app(app_name),
                    guild_id=guild_id,
                )
            await self._record_failure(guild_id, describe_error(exc))
            raise

        self._background.spawn(
            self._poller.run(guild_id, result.app_name, result.machine_id),
            name=f"readiness:{guild_id}",
        )
        return result

    async def _create_remote_unit(
        self,
        guild: dict[str, Any],
        reservation: SlotReservation | None,
        created_app: list[str],
    ) -> ProvisionResult:
        guild_id = guild["id"]
        tier = tiers.normalize_tier(guild.get("tier"))
        region = self._settings.region
        app_name = build_app_name(guild_id)
        env = self._environment_for(guild)

        logger.info(
            "Provisioning guild %s",
            guild_id,
            extra={"guild_id": guild_id, "app_name": app_name, "tier": tier},
        )

        await self._platform.create_app(app_name)
        created_app.append(app_name)

        volume = await self._platform.create_volume(
            app_name, build_volume_name(guild_id), region, self._settings.volume_size_gb,
        )
        volume_id = _require_id(volume, "volume")

        spec = build_machine_spec(
            app_name=app_name,
            image=image_ref(self._settings.default_image, self._settings.default_version),
            env=env,
            volume_id=volume_id,
        )
        machine = await self._platform.create_machine(app_name, spec, region)
        machine_id = _require_id(machine, "machine")

        logger.info(
            "Created remote resources for guild %s",
            guild_id,
            extra={
                "guild_id": guild_id,
                "app_name": app_name,
                "machine_id": machine_id,
                "volume_id": volume_id,
            },
        )

        quota = tiers.query_quota(
            tier,
            free_tier_config={"queries_per_slot": reservation.queries_per_slot} if reservation else None,
            free_tier_default=self._settings.free_tier_default_queries,
        )
        now = self._now()
        handles = {
            "app_name": app_name,
            "machine_id": machine_id,
            "volume_id": volume_id,
            "region": region,
        }
        deployment = {
            "guild_id": guild_id,
            "deployment_type": tier,
            "queries_total": quota,
            "queries_remaining": quota,
            "queries_used": 0,
            "total_cost": 0,
            "cost_this_period": 0,
            "query_types": {"discord_message": 0, "scheduled_task": 0},
            "cost_by_type": {"discord_message": 0, "scheduled_task": 0},
            "last_query_at": now,
            "created_at": now,
            "updated_at": now,
            **handles,
        }
        await self._guilds.commit_provisioned(guild_id, {**handles, "updated_at": now}, deployment)
        logger.info(
            "Created deployment record for %s tier guild %s",
            tier,
            guild_id,
            extra={"guild_id": guild_id, "queries_total": quota},
        )
        return ProvisionResult(**handles)

    def _environment_for(self, guild: dict[str, Any]) -> dict[str, str]:
        defaults = tiers.tier_defaults(guild.get("tier"))
        return build_environment(
            guild["id"],
            guild.get("memory_context_size") or defaults.memory_context_size,
            guild.get("memory_retention_months") or defaults.memory_retention_months,
            self._secrets.get_secret(SHARED_DISCORD_BOT_TOKEN),
            self._secrets.get_secret(SHARED_ANTHROPIC_API_KEY),
            self._settings.service_url,
            self._settings.base_url or None,
        )

    # ── Operational commands ────────────────────────────────────────

    async def restart_guild(self, user_id: str, guild_id: str) -> CommandResult:
        guild = await verify_ownership(self._guilds, user_id, guild_id)
        return await self._apply_machine_command(guild, RESTART)

    async def repair_guild(self, user_id: str, guild_id: str) -> CommandResult:
        """Restore env, mounts and machine shape, then restart."""
        guild = await verify_ownership(self._guilds, user_id, guild_id)
        return await self._apply_machine_command(guild, REPAIR)

    async def deploy_guild_update(self, user_id: str, guild_id: str, version: str) -> CommandResult:
        guild = await verify_ownership(self._guilds, user_id, guild_id)
        version = _validate_version(version)
        return await self._apply_machine_command(guild, deploy_command(version))

    async def admin_deploy_guild_bot(self, guild_id: str, version: str) -> CommandResult:
        """Same as deploy_guild_update without the ownership check."""
        version = _validate_version(version)
        guild = await self._guilds.get_guild(guild_id)
        if guild is None:
            raise NotFoundError("Guild not found")
        return await self._apply_machine_command(guild, deploy_command(version))

    async def _apply_machine_command(
        self,
        guild: dict[str, Any],
        command: MachineCommand,
    ) -> CommandResult:
        """Push the desired machine config derived from the live one."""
        guild_id = guild["id"]
        app_name, machine_id = _require_handles(guild)
        await self._claim(
            guild,
            MACHINE_COMMAND_FROM,
            {"status": PROVISIONING, "updated_at": self._now()},
        )
        logger.info(
            "Applying %s to guild %s",
            command.name,
            guild_id,
            extra={"guild_id": guild_id, "app_name": app_name, "machine_id": machine_id},
        )

        try:
            env = self._environment_for(guild)
            machine = await self._platform.get_machine(app_name, machine_id)
            current = machine.get("config") or {}
            image = self._resolve_image(current, command.image_tag)
            desired = compute_desired_config(
                current,
                env=env,
                volume_id=guild.get("volume_id"),
                image=image,
            )
            if not current.get("mounts") and desired["mounts"]:
                logger.info(
                    "Adding missing volume mount for guild %s",
                    guild_id,
                    extra={"guild_id": guild_id, "volume_id": guild.get("volume_id")},
                )

            await self._platform.update_machine(app_name, machine_id, desired)
            if command.force_restart:
                await self._platform.restart_machine(app_name, machine_id)

            now = self._now()
            done: dict[str, Any] = {"status": ACTIVE, "error_message": None, "updated_at": now}
            if command.image_tag is not None:
                done["last_deployed_at"] = now
            await self._guilds.update_guild(guild_id, done)
        except Exception as exc:
            logger.exception(
                "%s %s",
                command.failure_label,
                guild_id,
                extra={"guild_id": guild_id},
            )
            await self._record_failure(guild_id, f"{command.failure_label}: {describe_error(exc)}")
            raise

        logger.info("Completed %s for guild %s", command.name, guild_id, extra={"guild_id": guild_id})
        return CommandResult(
            guild_id=guild_id,
            command=command.name,
            image=image,
            restarted=command.force_restart,
        )

    def _resolve_image(self, current: dict[str, Any], tag: str | None) -> str:
        if tag is not None:
            return image_ref(self._settings.default_image, tag)
        return current.get("image") or image_ref(
            self._settings.default_image, self._settings.default_version,
        )

    # ── Observation ─────────────────────────────────────────────────

    async def get_guild_status(self, user_id: str, guild_id: str) -> dict[str, Any]:
        guild = await verify_ownership(self._guilds, user_id, guild_id)
        app_name, machine_id = _require_handles(guild)
        machine = await self._platform.get_machine(app_name, machine_id)
        state = machine.get("state")
        return {
            "status": "running" if state == "started" else state,
            "state": state,
            "region": machine.get("region"),
            "created_at": machine.get("created_at"),
            "updated_at": machine.get("updated_at"),
            "guild_status": guild.get("status"),
        }

    async def get_guild_logs(self, user_id: str, guild_id: str) -> dict[str, str]:
        # The machines API has no log endpoint; point at the CLI instead.
        guild = await verify_ownership(self._guilds, user_id, guild_id)
        app_name, machine_id = _require_handles(guild)
        logger.info(
            "Fetching logs for guild %s",
            guild_id,
            extra={"guild_id": guild_id, "app_name": app_name, "machine_id": machine_id},
        )
        return {"logs": f"Use 'flyctl logs -a {app_name}' to view logs"}

    async def get_guild_deployment_info(self, user_id: str, guild_id: str) -> dict[str, Any]:
        """Guild document joined with its deployment record."""
        guild = await verify_ownership(self._guilds, user_id, guild_id)
        deployment = await self._deployments.get_guild_deployment(guild_id)
        if deployment is None:
            raise NotFoundError("Deployment data not found")
        return _deployment_info(guild, deployment)

    async def list_user_guilds(self, user_id: str) -> list[dict[str, Any]]:
        """Every provisioned guild of a user. Guilds with no deployment record are left out."""
        infos = []
        for guild in await self._guilds.list_guilds_for_user(user_id):
            deployment = await self._deployments.get_guild_deployment(guild["id"])
            if deployment is None:
                logger.warning(
                    "No deployment data found for guild %s",
                    guild["id"],
                    extra={"guild_id": guild["id"], "user_id": user_id},
                )
                continue
            infos.append(_deployment_info(guild, deployment))
        return infos

    # ── Tier changes ────────────────────────────────────────────────

    async def upgrade_guild(
        self,
        user_id: str,
        guild_id: str,
        target_tier: str,
        *,
        subscription_id: str | None = None,
    ) -> UpgradeResult:
        """Move a provisioned guild to a paid tier and start a fresh period.

        The quota resets to the tier default and a suspended guild becomes
        active again. Memory settings in the machine env change on the next
        restart or repair.

        Raises:
            InvalidArgumentError: ``target_tier`` is not a paid tier.
            NotFoundError: Guild or deployment record missing.
            PermissionDeniedError: Caller does not own the guild.
            FailedPreconditionError: No active subscription, or the guild
                is mid-command.
        """
        guild = await verify_ownership(self._guilds, user_id, guild_id)
        try:
            tier = tiers.normalize_tier(target_tier)
        except ValueError as exc:
            raise InvalidArgumentError("Invalid target tier") from exc
        if tier not in tiers.PAID_TIERS:
            raise InvalidArgumentError("Invalid target tier")

        deployment = await self._deployments.get_guild_deployment(guild_id)
        if deployment is None:
            raise NotFoundError("Deployment data not found")

        status = guild.get("status")
        if status not in UPGRADE_FROM:
            raise _status_conflict(status)
        subscription_id = subscription_id or guild.get("subscription_id")
        await self._require_active_subscription({**guild, "subscription_id": subscription_id})

        defaults = tiers.TIER_DEFAULTS[tier]
        now = self._clock()
        data: dict[str, Any] = {
            "tier": tier,
            "subscription_id": subscription_id,
            "memory_context_size": defaults.memory_context_size,
            "memory_retention_months": defaults.memory_retention_months,
            "period_start": now.isoformat(),
            "period_end": (now + BILLING_PERIOD).isoformat(),
            "updated_at": now.isoformat(),
        }
        if status == SUSPENDED:
            data.update(status=ACTIVE, suspended_reason=None, suspended_at=None)

        # Lands only if no command claimed the guild since it was read.
        updated = await self._guilds.update_guild_if_status(guild_id, (status,), data)
        if updated is None:
            current = await self._guilds.get_guild(guild_id)
            if current is None:
                raise NotFoundError("Guild not found")
            raise _status_conflict(current.get("status"))

        await self._deployments.update_guild_deployment(
            guild_id,
            {
                "deployment_type": tier,
                "queries_total": defaults.queries_total,
                "queries_remaining": defaults.queries_total,
                "queries_used": 0,
                "cost_this_period": 0,
                "updated_at": now.isoformat(),
            },
        )

        previous_tier = deployment.get("deployment_type") or guild.get("tier") or tiers.FREE
        logger.info(
            "Guild %s upgraded to %s tier",
            guild_id,
            tier,
            extra={
                "guild_id": guild_id,
                "previous_tier": previous_tier,
                "tier": tier,
                "queries_total": defaults.queries_total,
            },
        )
        return UpgradeResult(
            guild_id=guild_id,
            previous_tier=previous_tier,
            tier=tier,
            queries_total=defaults.queries_total,
            status=updated.get("status", status),
        )

    # ── Teardown ────────────────────────────────────────────────────

    async def deprovision_guild(self, user_id: str, guild_id: str) -> DeprovisionResult:
        guild = await verify_ownership(self._guilds, user_id, guild_id)
        return await self._deprovision(guild)

    async def delete_user_account(self, user_id: str) -> AccountDeletionResult:
        """Deprovision every guild of a user, then remove the user and identity.

        Partial failure is reported in ``errors``, not raised.
        """
        errors: list[str] = []
        deleted = 0

        for guild in await self._guilds.list_guilds_for_user(user_id):
            guild_id = guild["id"]
            try:
                outcome = await self._deprovision(guild)
            except Exception as exc:
                logger.exception(
                    "Failed to delete guild %s during account deletion",
                    guild_id,
                    extra={"guild_id": guild_id, "user_id": user_id},
                )
                errors.append(f"Guild {guild_id}: {describe_error(exc)}")
                continue
            deleted += 1
            errors.extend(f"Guild {guild_id}: {warning}" for warning in outcome.warnings)

        for description, action in (
            ("delete user record", lambda: self._users.delete_user(user_id)),
            ("delete auth identity", lambda: self._identity.delete_identity(user_id)),
        ):
            warning = await self._best_effort(description, action, user_id=user_id)
            if warning:
                errors.append(warning)

        logger.info(
            "Deleted account %s",
            user_id,
            extra={"user_id": user_id, "deleted_guilds": deleted, "error_count": len(errors)},
        )
        return AccountDeletionResult(deleted_guild_count=deleted, errors=tuple(errors))

    async def _deprovision(self, guild: dict[str, Any]) -> DeprovisionResult:
        guild_id = guild["id"]
        if guild.get("status") == DEPROVISIONING:
            raise FailedPreconditionError("Guild is already being deprovisioned")

        await self._claim(
            guild,
            DEPROVISION_FROM,
            {"status": DEPROVISIONING, "updated_at": self._now()},
        )
        warnings: list[str] = []

        subscription_id = guild.get("subscription_id")
        if subscription_id:
            # Immediate, not at period end: the workload is going away now.
            logger.info(
                "Canceling subscription for guild %s",
                guild_id,
                extra={"guild_id": guild_id, "subscription_id": subscription_id},
            )
            warning = await self._best_effort(
                f"cancel subscription {subscription_id}",
                lambda: self._billing.cancel_subscription_immediately(subscription_id),
                guild_id=guild_id,
            )
            if warning:
                warnings.append(warning)

        try:
            deployment = await self._deployments.get_guild_deployment(guild_id)
            if deployment is not None:
                app_name = deployment.get("app_name") or guild.get("app_name")
                if app_name:
                    warning = await self._best_effort(
                        f"delete app {app_name}",
                        lambda: self._delete_app(app_name),
                        guild_id=guild_id,
                    )
                    if warning:
                        warnings.append(warning)
                await self._deployments.delete_guild_deployment(guild_id)
                logger.info("Deleted deployment record for guild %s", guild_id, extra={"guild_id": guild_id})
            else:
                logger.warning("No deployment found for guild %s", guild_id, extra={"guild_id": guild_id})

            # Free-tier slots are not released here; they count sign-ups.
            await self._guilds.delete_guild(guild_id)
        except Exception as exc:
            logger.exception("Failed to deprovision guild %s", guild_id, extra={"guild_id": guild_id})
            # Park in error so deprovisioning can claim the guild again.
            await self._record_failure(
                guild_id,
                f"Failed to deprovision guild: {describe_error(exc)}",
                expected=(DEPROVISIONING,),
            )
            raise

        logger.info("Deprovisioned and deleted guild %s", guild_id, extra={"guild_id": guild_id})
        return DeprovisionResult(guild_id=guild_id, warnings=tuple(warnings))

    async def _delete_app(self, app_name: str) -> None:
        try:
            await self._platform.delete_app(app_name)
        except RemoteNotFoundError:
            logger.info("App %s already deleted", app_name, extra={"app_name": app_name})

    # ── Shared helpers ──────────────────────────────────────────────

    async def _claim(
        self,
        guild: dict[str, Any],
        expected: Collection[str],
        data: dict[str, Any],
    ) -> dict[str, Any]:
        """Conditionally move the guild into a transitional status.

        The conditional write is what keeps one command in flight per guild.
        """
        guild_id = guild["id"]
        target = data["status"]
        status = guild.get("status")
        if status not in expected:
            raise _status_conflict(status)
        try:
            require_transition(status, target)
        except InvalidStatusTransition as exc:
            raise _status_conflict(status) from exc

        updated = await self._guilds.update_guild_if_status(guild_id, expected, data)
        if updated is not None:
            return updated

        current = await self._guilds.get_guild(guild_id)
        if current is None:
            raise NotFoundError("Guild not found")
        raise _status_conflict(current.get("status"))

    async def _record_failure(
        self,
        guild_id: str,
        message: str,
        *,
        expected: Collection[str] = (PROVISIONING,),
    ) -> None:
        """Best-effort status=error write that never overwrites a newer status."""
        data = {"status": ERROR, "error_message": message, "updated_at": self._now()}
        try:
            updated = await self._guilds.update_guild_if_status(guild_id, expected, data)
        except Exception:
            logger.exception(
                "Failed to record error status for guild %s",
                guild_id,
                extra={"guild_id": guild_id},
            )
            return
        if updated is None:
            logger.warning(
                "Guild %s was not in %s; error status not recorded",
                guild_id,
                sorted(expected),
                extra={"guild_id": guild_id},
            )

    async def _best_effort(
        self,
        description: str,
        action: Callable[[], Awaitable[Any]],
        **context: Any,
    ) -> str | None:
        """Attempt, log, continue. Returns a warning string on failure."""
        try:
            await action()
        except Exception as exc:
            logger.exception("Failed to %s", description, extra=context)
            return f"Failed to {description}: {describe_error(exc)}"
        return None


def _status_conflict(status: str | None) -> FailedPreconditionError:
    if status == PROVISIONING:
        return FailedPreconditionError("Guild is already being provisioned")
    if status == DEPROVISIONING:
        return FailedPreconditionError("Guild is already being deprovisioned")
    return FailedPreconditionError(f"Guild cannot be changed while {status}")


def _deployment_info(guild: dict[str, Any], deployment: dict[str, Any]) -> dict[str, Any]:
    total = int(deployment.get("queries_total") or 0)
    used = int(deployment.get("queries_used") or 0)
    return {
        "guild_id": guild["id"],
        "guild_name": guild.get("guild_name"),
        "guild_icon": guild.get("guild_icon"),
        "status": guild.get("status"),
        "tier": guild.get("tier") or tiers.FREE,
        "deployment_type": deployment.get("deployment_type"),
        "queries_total": total,
        "queries_used": used,
        "queries_remaining": max(0, total - used),
        "created_at": guild.get("created_at"),
        "last_query_at": deployment.get("last_query_at"),
        "last_deployed_at": guild.get("last_deployed_at"),
        "suspended_reason": guild.get("suspended_reason"),
        "suspended_at": guild.get("suspended_at"),
        "period_start": guild.get("period_start"),
        "period_end": guild.get("period_end"),
        "memory_context_size": guild.get("memory_context_size")
        or tiers.TIER_DEFAULTS[tiers.normalize_tier(guild.get("tier"))].memory_context_size,
        "error_message": guild.get("error_message"),
    }


def _require_handles(guild: dict[str, Any]) -> tuple[str, str]:
    app_name = guild.get("app_name")
    machine_id = guild.get("machine_id")
    if not app_name or not machine_id:
        raise NotFoundError("Guild deployment not found")
    return app_name, machine_id


def _require_id(resource: dict[str, Any], kind: str) -> str:
    resource_id = resource.get("id")
    if not resource_id:
        raise InternalError(f"Machines API returned a {kind} without an id")
    return str(resource_id)


def _validate_version(version: str) -> str:
    value = (version or "").strip()
    if not _IMAGE_TAG_RE.match(value):
        raise InvalidArgumentError("version must be a valid image tag")
    return value
