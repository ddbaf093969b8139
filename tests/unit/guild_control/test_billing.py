"""Tests for the Stripe billing provider."""

from __future__ import annotations

from unittest.mock import patch

import pytest
import stripe

from guild_control.billing import StripeBillingProvider
from guild_control.security.secrets import STRIPE_SECRET_KEY, SecretNotFoundError, StaticSecretStore


def _provider(key="sk_test_123"):
    return StripeBillingProvider(secrets=StaticSecretStore({STRIPE_SECRET_KEY: key}))


@pytest.mark.asyncio
async def test_cancel_passes_key_per_call():
    with patch.object(stripe.Subscription, "cancel") as cancel:
        await _provider().cancel_subscription_immediately("sub_1")

    cancel.assert_called_once_with("sub_1", api_key="sk_test_123")


@pytest.mark.asyncio
async def test_already_canceled_subscription_is_success():
    missing = stripe.InvalidRequestError(
        "No such subscription: 'sub_1'", "id", code="resource_missing",
    )
    with patch.object(stripe.Subscription, "cancel", side_effect=missing):
        await _provider().cancel_subscription_immediately("sub_1")


@pytest.mark.asyncio
async def test_other_stripe_errors_propagate():
    invalid = stripe.InvalidRequestError("bad", "id", code="parameter_invalid_empty")
    with patch.object(stripe.Subscription, "cancel", side_effect=invalid):
        with pytest.raises(stripe.InvalidRequestError):
            await _provider().cancel_subscription_immediately("sub_1")


@pytest.mark.asyncio
async def test_missing_key_fails_before_calling_stripe():
    provider = StripeBillingProvider(secrets=StaticSecretStore())
    with patch.object(stripe.Subscription, "cancel") as cancel:
        with pytest.raises(SecretNotFoundError):
            await provider.cancel_subscription_immediately("sub_1")

    cancel.assert_not_called()
