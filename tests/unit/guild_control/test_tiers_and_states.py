"""Unit tests for the tier table and the guild status lifecycle."""

from __future__ import annotations

import pytest

from guild_control.provisioning import state_machine as sm
from guild_control.provisioning.tiers import (
    TIERS,
    is_paid,
    normalize_tier,
    query_quota,
    tier_defaults,
)


# ── Tiers ────────────────────────────────────────────────────────


def test_missing_tier_means_free():
    assert normalize_tier(None) == "free"
    assert normalize_tier("") == "free"
    assert not is_paid(None)


def test_unknown_tier_rejected():
    with pytest.raises(ValueError):
        normalize_tier("enterprise")


@pytest.mark.parametrize(
    ("tier", "context", "retention", "quota"),
    [
        ("free", 10000, 1, 25),
        ("starter", 10000, 3, 500),
        ("pro", 50000, 6, 1200),
        ("business", 100000, 12, 3000),
    ],
)
def test_tier_defaults_table(tier, context, retention, quota):
    defaults = tier_defaults(tier)

    assert defaults.memory_context_size == context
    assert defaults.memory_retention_months == retention
    assert query_quota(tier) == quota


def test_free_quota_follows_capacity_config():
    assert query_quota("free", free_tier_config={"queries_per_slot": 40}) == 40
    assert query_quota("free", free_tier_config={}, free_tier_default=30) == 30
    assert query_quota("free", free_tier_config={"queries_per_slot": None}) == 25


def test_paid_quota_ignores_capacity_config():
    assert query_quota("pro", free_tier_config={"queries_per_slot": 40}) == 1200


def test_every_tier_has_defaults():
    for tier in TIERS:
        assert tier_defaults(tier).queries_total > 0


# ── Lifecycle ────────────────────────────────────────────────────


def test_happy_path_transitions():
    assert sm.can_transition(sm.PENDING, sm.PROVISIONING)
    assert sm.can_transition(sm.PROVISIONING, sm.ACTIVE)
    assert sm.can_transition(sm.ACTIVE, sm.DEPROVISIONING)
    assert sm.can_transition(sm.DEPROVISIONING, sm.DELETED)


def test_error_is_recoverable():
    assert sm.can_transition(sm.ERROR, sm.PROVISIONING)
    assert sm.can_transition(sm.ERROR, sm.DEPROVISIONING)


def test_deprovisioning_leads_to_deleted_or_error():
    for status in sm.STATUSES - {sm.DELETED, sm.ERROR}:
        assert not sm.can_transition(sm.DEPROVISIONING, status)
    assert sm.can_transition(sm.DEPROVISIONING, sm.DELETED)
    # A failed teardown parks in error, from which deprovisioning is retried.
    assert sm.can_transition(sm.DEPROVISIONING, sm.ERROR)
    assert sm.ERROR in sm.DEPROVISION_FROM


def test_deleted_is_terminal():
    assert sm.ALLOWED_TRANSITIONS[sm.DELETED] == frozenset()


def test_missing_status_treated_as_pending():
    assert sm.can_transition(None, sm.PROVISIONING)
    assert not sm.can_transition(None, sm.ACTIVE)


def test_require_transition_raises():
    with pytest.raises(sm.InvalidStatusTransition) as exc_info:
        sm.require_transition(sm.PENDING, sm.ACTIVE)

    assert exc_info.value.from_status == "pending"
    assert exc_info.value.to_status == "active"


def test_claim_sets_are_consistent_with_transitions():
    for status in sm.PROVISION_FROM | sm.PROVISION_RECLAIM_FROM:
        assert sm.can_transition(status, sm.PROVISIONING)
    for status in sm.MACHINE_COMMAND_FROM:
        assert sm.can_transition(status, sm.PROVISIONING)
    for status in sm.DEPROVISION_FROM:
        assert sm.can_transition(status, sm.DEPROVISIONING)
    assert sm.DEPROVISIONING not in sm.DEPROVISION_FROM
    assert sm.PROVISIONING not in sm.PROVISION_FROM
