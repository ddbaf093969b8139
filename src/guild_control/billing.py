"""Stripe billing provider.

Only one billing operation belongs to the control plane: cancelling a
guild's subscription immediately when the guild is torn down. Checkout,
webhooks and dunning live elsewhere.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import stripe

from .security.secrets import STRIPE_SECRET_KEY

logger = logging.getLogger(__name__)


class StripeBillingProvider:
    """Satisfies the ``BillingProvider`` protocol.

    The key is resolved per call so rotation needs no restart; the stripe
    SDK is synchronous and runs in a worker thread.
    """

    def __init__(self, *, secrets: Any, key_secret_name: str = STRIPE_SECRET_KEY) -> None:
        self._secrets = secrets
        self._key_secret_name = key_secret_name

    async def cancel_subscription_immediately(self, subscription_id: str) -> None:
        api_key = self._secrets.get_secret(self._key_secret_name)
        try:
            await asyncio.to_thread(
                stripe.Subscription.cancel, subscription_id, api_key=api_key,
            )
        except stripe.InvalidRequestError as exc:
            if getattr(exc, "code", None) != "resource_missing":
                raise
            logger.info(
                "Subscription %s already gone",
                subscription_id,
                extra={"subscription_id": subscription_id},
            )
            return
        logger.info(
            "Canceled subscription %s",
            subscription_id,
            extra={"subscription_id": subscription_id},
        )
