"""Guild provisioning: tier table, machine config, admission, lifecycle and readiness."""

from .admission import FreeTierAdmission, SlotReservation
from .environment import (
    build_environment,
    build_machine_spec,
    compute_desired_config,
    image_ref,
)
from .readiness import BackgroundTasks, ReadinessPoller
from .state_machine import (
    ALLOWED_TRANSITIONS,
    InvalidStatusTransition,
    can_transition,
    require_transition,
)
from .tiers import TIER_DEFAULTS, TierDefaults, normalize_tier, query_quota, tier_defaults

__all__ = [
    'ALLOWED_TRANSITIONS',
    'BackgroundTasks',
    'FreeTierAdmission',
    'InvalidStatusTransition',
    'ReadinessPoller',
    'SlotReservation',
    'TIER_DEFAULTS',
    'TierDefaults',
    'build_environment',
    'build_machine_spec',
    'can_transition',
    'compute_desired_config',
    'image_ref',
    'normalize_tier',
    'query_quota',
    'require_transition',
    'tier_defaults',
]
