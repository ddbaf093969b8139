"""Tier-derived defaults in one lookup table.

Context size, memory retention and query quota are all derived from the
guild tier here and nowhere else. The free-tier quota is the one value that
can be overridden at runtime (``queries_per_slot`` on the capacity document).
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Mapping

FREE = "free"
STARTER = "starter"
PRO = "pro"
BUSINESS = "business"

TIERS: tuple[str, ...] = (FREE, STARTER, PRO, BUSINESS)
PAID_TIERS = frozenset({STARTER, PRO, BUSINESS})

DEFAULT_FREE_TIER_QUERIES = 25


@dataclass(frozen=True, slots=True)
class TierDefaults:
    memory_context_size: int
    memory_retention_months: int
    queries_total: int


TIER_DEFAULTS: Mapping[str, TierDefaults] = MappingProxyType(
    {
        FREE: TierDefaults(
            memory_context_size=10000,
            memory_retention_months=1,
            queries_total=DEFAULT_FREE_TIER_QUERIES,
        ),
        STARTER: TierDefaults(
            memory_context_size=10000,
            memory_retention_months=3,
            queries_total=500,
        ),
        PRO: TierDefaults(
            memory_context_size=50000,
            memory_retention_months=6,
            queries_total=1200,
        ),
        BUSINESS: TierDefaults(
            memory_context_size=100000,
            memory_retention_months=12,
            queries_total=3000,
        ),
    }
)


def normalize_tier(tier: str | None) -> str:
    """Missing tier means free; unknown tiers are rejected."""
    value = (tier or FREE).strip().lower()
    if value not in TIER_DEFAULTS:
        raise ValueError(f"unknown tier: {tier!r}")
    return value


def is_paid(tier: str | None) -> bool:
    return normalize_tier(tier) in PAID_TIERS


def tier_defaults(tier: str | None) -> TierDefaults:
    return TIER_DEFAULTS[normalize_tier(tier)]


def query_quota(
    tier: str | None,
    *,
    free_tier_config: Mapping[str, Any] | None = None,
    free_tier_default: int = DEFAULT_FREE_TIER_QUERIES,
) -> int:
    """Return ``queries_total`` for a new deployment record."""
    value = normalize_tier(tier)
    if value == FREE:
        configured = (free_tier_config or {}).get("queries_per_slot")
        return int(configured) if configured else free_tier_default
    return TIER_DEFAULTS[value].queries_total
