"""
Hosted checkout through Stripe PaymentIntents.

The API only exchanges an amount in minor currency units for the intent's
client secret; card entry and confirmation happen in Stripe's client widget.
"""

import os
import logging

import stripe

logger = logging.getLogger("farmdirect.payments")

PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "usd")
stripe.api_key = os.getenv("STRIPE_SECRET_KEY")


class PaymentNotConfigured(RuntimeError):
    pass


def create_payment_intent(amount: int, currency: str = PAYMENT_CURRENCY) -> str:
    if not isinstance(amount, int) or amount <= 0:
        raise ValueError("amount must be a positive integer number of minor units")
    if not stripe.api_key:
        raise PaymentNotConfigured("STRIPE_SECRET_KEY is not set")
    intent = stripe.PaymentIntent.create(
        amount=amount,
        currency=currency,
        automatic_payment_methods={"enabled": True},
    )
    logger.info("payment_intent_created intent_id=%s amount=%d currency=%s", intent.id, amount, currency)
    return intent.client_secret
