from __future__ import annotations

import time

from app.modules.billing import api as billing_api
from tests.testkit import create_account, create_payment_request, create_plan, owner_of, signed_payload, stripe_event

WEBHOOK_URL = "/billing/stripe/webhooks"
SECRET = "whsec_test_123"


def _post(client, event, *, secret=SECRET, timestamp=None):
    payload, header = signed_payload(event, secret, timestamp=timestamp)
    return client.post(
        WEBHOOK_URL, content=payload, headers={"Stripe-Signature": header, "Content-Type": "application/json"}
    )


def test_missing_signature_is_rejected(client):
    res = client.post(WEBHOOK_URL, content=b"{}")
    assert res.status_code == 400
    assert res.text == "Missing signature"


def test_bad_signature_is_rejected(client):
    res = _post(client, stripe_event("invoice.paid", {}), secret="whsec_wrong")
    assert res.status_code == 400
    assert res.text == "Invalid signature"


def test_stale_signature_is_rejected(client):
    res = _post(client, stripe_event("invoice.paid", {}), timestamp=int(time.time()) - 3600)
    assert res.status_code == 400


def test_unhandled_event_is_acknowledged(client):
    res = _post(client, stripe_event("customer.created", {"id": "cus_1"}))
    assert res.status_code == 200
    assert res.text == "OK"


def test_checkout_completed_grants_over_http(client, db, recorder):
    account = create_account(db)
    plan = create_plan(db)
    request = create_payment_request(
        db,
        owner_of(account),
        plan,
        status="processing",
        provider_ref="cs_1",
        provider_data={"checkout_session_id": "cs_1", "mode": "subscription"},
    )
    db.commit()

    event = stripe_event(
        "checkout.session.completed",
        {"id": "cs_1", "customer": "cus_1", "subscription": "sub_1", "mode": "subscription", "metadata": {}},
    )
    res = _post(client, event)

    assert res.status_code == 200
    assert request.status == "approved"
    assert request.entitlement.provider_ref == "sub_1"
    assert len(recorder.named("entitlement_changed")) == 1


def test_processing_error_rolls_back(client, db, monkeypatch, recorder):
    def _boom(db, runtime, event):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(billing_api, "handle_event", _boom)
    res = _post(client, stripe_event("invoice.paid", {"id": "in_1"}))

    assert res.status_code == 422
    assert res.text == "Processing error: database unavailable"
    assert recorder.calls == []


def test_skip_verification_accepts_unsigned_payload(client, monkeypatch):
    monkeypatch.setattr(billing_api.settings, "STRIPE_WEBHOOK_SKIP_VERIFICATION", True)
    res = client.post(
        WEBHOOK_URL,
        content=b'{"type": "customer.created", "data": {"object": {}}}',
        headers={"Stripe-Signature": "unsigned"},
    )
    assert res.status_code == 200


def test_skip_verification_still_rejects_garbage(client, monkeypatch):
    monkeypatch.setattr(billing_api.settings, "STRIPE_WEBHOOK_SKIP_VERIFICATION", True)
    res = client.post(WEBHOOK_URL, content=b"not json", headers={"Stripe-Signature": "unsigned"})
    assert res.status_code == 400
