from types import SimpleNamespace

import pytest
import stripe

from payments import PaymentNotConfigured, create_payment_intent


def test_rejects_non_positive_amounts():
    with pytest.raises(ValueError):
        create_payment_intent(0)


def test_requires_secret_key(monkeypatch):
    monkeypatch.setattr(stripe, "api_key", None)
    with pytest.raises(PaymentNotConfigured):
        create_payment_intent(500)


def test_passes_amount_and_currency(monkeypatch):
    seen = {}

    def fake_create(**kwargs):
        seen.update(kwargs)
        return SimpleNamespace(id="pi_1", client_secret="pi_1_secret")

    monkeypatch.setattr(stripe, "api_key", "sk_test_123")
    monkeypatch.setattr(stripe.PaymentIntent, "create", fake_create)

    assert create_payment_intent(999, currency="eur") == "pi_1_secret"
    assert seen == {"amount": 999, "currency": "eur", "automatic_payment_methods": {"enabled": True}}
