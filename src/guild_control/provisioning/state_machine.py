"""Guild status lifecycle.

  pending -> provisioning -> active
  provisioning -> error, active -> error
  error -> provisioning (restart / repair / re-provision)
  active | error | pending | suspended -> deprovisioning -> deleted
  deprovisioning -> error (local records could not be removed; retryable)

``suspended`` is written by billing collaborators. The orchestrator only
reads it, and treats it like ``active`` for operational commands.

Commands claim a guild by moving it into a transitional status with a
conditional write, which is what keeps one command in flight per guild.
"""

from __future__ import annotations

from types import MappingProxyType

PENDING = "pending"
PROVISIONING = "provisioning"
ACTIVE = "active"
ERROR = "error"
DEPROVISIONING = "deprovisioning"
DELETED = "deleted"
SUSPENDED = "suspended"

STATUSES = frozenset(
    {PENDING, PROVISIONING, ACTIVE, ERROR, DEPROVISIONING, DELETED, SUSPENDED}
)
TRANSITIONAL_STATUSES = frozenset({PROVISIONING, DEPROVISIONING})

ALLOWED_TRANSITIONS = MappingProxyType(
    {
        PENDING: frozenset({PROVISIONING, DEPROVISIONING}),
        # provisioning -> provisioning tolerates duplicate upstream triggers.
        PROVISIONING: frozenset({PROVISIONING, ACTIVE, ERROR, DEPROVISIONING}),
        ACTIVE: frozenset({PROVISIONING, ERROR, DEPROVISIONING, SUSPENDED}),
        ERROR: frozenset({PROVISIONING, DEPROVISIONING}),
        SUSPENDED: frozenset({PROVISIONING, ACTIVE, DEPROVISIONING}),
        DEPROVISIONING: frozenset({DELETED, ERROR}),
        DELETED: frozenset(),
    }
)

# Statuses from which each kind of command may claim the guild.
PROVISION_FROM = frozenset({PENDING, ERROR})
# Used when the caller already moved the guild to provisioning itself.
PROVISION_RECLAIM_FROM = frozenset({PROVISIONING})
MACHINE_COMMAND_FROM = frozenset({ACTIVE, ERROR, SUSPENDED})
# Tier upgrades need a deployment record and no command in flight.
UPGRADE_FROM = frozenset({ACTIVE, ERROR, SUSPENDED})
DEPROVISION_FROM = frozenset({PENDING, PROVISIONING, ACTIVE, ERROR, SUSPENDED})
# Poller terminal writes only land while the guild is still being provisioned.
POLLER_FROM = frozenset({PROVISIONING})


class InvalidStatusTransition(ValueError):
    """Raised for a status change the lifecycle does not allow."""

    def __init__(self, from_status: str, to_status: str) -> None:
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"invalid status transition: {from_status!r} -> {to_status!r}"
        )


def can_transition(from_status: str | None, to_status: str) -> bool:
    allowed = ALLOWED_TRANSITIONS.get(from_status or PENDING, frozenset())
    return to_status in allowed


def require_transition(from_status: str | None, to_status: str) -> None:
    if not can_transition(from_status, to_status):
        raise InvalidStatusTransition(from_status or PENDING, to_status)
