from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from app.models.account import Account
from app.models.entitlement import Entitlement
from app.services import entitlements as entitlement_service
from app.services import payment_requests as payment_request_service
from app.services import webhook_handlers
from app.services.webhook_handlers import HANDLERS, handle_event
from tests.testkit import create_account, create_payment_request, create_plan, owner_of, stripe_event

PERIOD_END = datetime(2026, 12, 1, tzinfo=timezone.utc)


def _processing_checkout(db, *, mode="subscription", interval="monthly"):
    account = create_account(db)
    plan = create_plan(db, interval=interval, metadata={"stripe_price_id": "price_123"})
    request = create_payment_request(
        db,
        owner_of(account),
        plan,
        status="processing",
        provider_ref="cs_1",
        provider_data={"checkout_session_id": "cs_1", "mode": mode},
    )
    db.commit()
    return account, plan, request


def _session_completed(request, **overrides):
    obj = {
        "id": "cs_1",
        "object": "checkout.session",
        "customer": "cus_1",
        "mode": "subscription",
        "subscription": "sub_1",
        "payment_intent": None,
        "metadata": {"payment_request_id": str(request.id)},
    }
    obj.update(overrides)
    return stripe_event("checkout.session.completed", obj)


def _subscribed(db, runtime):
    account, plan, request = _processing_checkout(db)
    handle_event(db, runtime, _session_completed(request))
    db.commit()
    return account, plan, request


def _invoice(event_type, **fields):
    obj = {
        "id": "in_1",
        "object": "invoice",
        "subscription": "sub_1",
        "lines": {"data": [{"period": {"end": int(PERIOD_END.timestamp())}}]},
    }
    obj.update(fields)
    return stripe_event(event_type, obj)


def _subscription(event_type, status="active"):
    return stripe_event(event_type, {"id": "sub_1", "object": "subscription", "status": status})


def test_dispatch_table_covers_supported_events():
    assert set(HANDLERS) == {
        "checkout.session.completed",
        "invoice.paid",
        "invoice.payment_failed",
        "customer.subscription.updated",
        "customer.subscription.deleted",
        "charge.refunded",
    }


def test_unknown_event_is_ignored(db, runtime):
    assert handle_event(db, runtime, stripe_event("customer.created", {"id": "cus_1"})) is False


# checkout.session.completed


def test_checkout_completed_grants_and_links_subscription(db, runtime, recorder):
    account, plan, request = _subscribed(db, runtime)

    assert request.status == "approved"
    assert request.provider_ref == "sub_1"
    assert request.provider_data["subscription_id"] == "sub_1"
    assert request.provider_data["customer_id"] == "cus_1"
    entitlement = request.entitlement
    assert entitlement.status == "active"
    assert entitlement.provider == "stripe"
    assert entitlement.provider_ref == "sub_1"
    assert entitlement_service.current_plan(db, owner_of(account)).id == plan.id
    assert db.get(Account, account.id).billing_metadata["stripe_customer_id"] == "cus_1"
    assert [args[1:] for args in recorder.named("payment_request_changed")] == [("processing", "approved")]


def test_checkout_completed_is_idempotent(db, runtime, recorder):
    account, _, request = _subscribed(db, runtime)
    entitlement_id = request.entitlement_id
    recorder.clear()

    handle_event(db, runtime, _session_completed(request))
    db.commit()

    assert request.entitlement_id == entitlement_id
    assert recorder.calls == []
    owner = owner_of(account)
    granted = db.execute(
        sa.select(Entitlement).where(
            Entitlement.entitleable_type == owner.owner_type, Entitlement.entitleable_id == owner.owner_id
        )
    ).scalars().all()
    assert [e.id for e in granted] == [entitlement_id]


def test_checkout_completed_falls_back_to_metadata(db, runtime):
    _, _, request = _processing_checkout(db)
    handle_event(db, runtime, _session_completed(request, id="cs_other"))
    assert request.status == "approved"


def test_checkout_completed_for_unknown_session_is_a_noop(db, runtime):
    _, _, request = _processing_checkout(db)
    event = _session_completed(request, id="cs_unknown", metadata={})
    handle_event(db, runtime, event)
    assert request.status == "processing"


def test_checkout_completed_payment_mode_stores_payment_intent(db, runtime):
    _, _, request = _processing_checkout(db, mode="payment", interval="lifetime")
    event = _session_completed(request, mode="payment", subscription=None, payment_intent="pi_1")
    handle_event(db, runtime, event)

    assert request.status == "approved"
    assert request.provider_ref == "cs_1"
    assert request.provider_data["payment_intent_id"] == "pi_1"
    assert request.entitlement.provider_ref is None


def test_checkout_completed_survives_owner_without_metadata(db, runtime):
    _, _, request = _processing_checkout(db)
    runtime.owners.reset()
    runtime.owners.register("Account", lambda db, owner_id: object())

    handle_event(db, runtime, _session_completed(request))
    assert request.status == "approved"


def _locking_selects(db, monkeypatch):
    issued = []
    execute = db.execute

    def _recording(statement, *args, **kwargs):
        if isinstance(statement, sa.Select) and statement.column_descriptions[0]["name"] == "PaymentRequest":
            issued.append(str(statement.compile(dialect=postgresql.dialect())))
        return execute(statement, *args, **kwargs)

    monkeypatch.setattr(db, "execute", _recording)
    return issued


@pytest.mark.parametrize("session_id", ["cs_1", "cs_other"])
def test_checkout_lookup_locks_the_payment_request(db, runtime, monkeypatch, session_id):
    _, _, request = _processing_checkout(db)
    issued = _locking_selects(db, monkeypatch)

    assert webhook_handlers.find_payment_request_by_session(
        db, {"id": session_id, "metadata": {"payment_request_id": str(request.id)}}
    ) is request
    assert issued
    assert all(sql.rstrip().endswith("FOR UPDATE") for sql in issued)


# invoice.paid / invoice.payment_failed


def test_invoice_paid_extends_and_notifies(db, runtime, recorder):
    _, _, request = _subscribed(db, runtime)
    recorder.clear()

    handle_event(db, runtime, _invoice("invoice.paid"))
    db.commit()

    assert request.entitlement.expires_at == PERIOD_END
    assert request.entitlement.status == "active"
    assert request.provider_data["invoice_id"] == "in_1"
    assert [args[1:] for args in recorder.named("entitlement_changed")] == [("active", "active")]


def test_invoice_paid_replay_does_not_double_extend(db, runtime):
    _, _, request = _subscribed(db, runtime)
    handle_event(db, runtime, _invoice("invoice.paid"))
    handle_event(db, runtime, _invoice("invoice.paid"))
    assert request.entitlement.expires_at == PERIOD_END


def test_invoice_paid_reactivates_expired_entitlement(db, runtime):
    _, _, request = _subscribed(db, runtime)
    entitlement_service.expire_entitlement(db, runtime, request.entitlement)

    handle_event(db, runtime, _invoice("invoice.paid"))
    assert request.entitlement.status == "active"


def test_invoice_paid_defaults_to_one_month(db, runtime):
    _, _, request = _subscribed(db, runtime)
    before = datetime.now(timezone.utc)
    handle_event(db, runtime, _invoice("invoice.paid", lines={"data": []}))
    assert before + timedelta(days=27) < request.entitlement.expires_at < before + timedelta(days=32)


def test_invoice_paid_without_period_replay_keeps_expiry(db, runtime):
    _, _, request = _subscribed(db, runtime)
    request.entitlement.expires_at = datetime.now(timezone.utc) + timedelta(days=2)
    db.commit()

    event = _invoice("invoice.paid", lines={"data": []})
    handle_event(db, runtime, event)
    db.commit()
    first = request.entitlement.expires_at

    handle_event(db, runtime, event)
    db.commit()
    assert request.entitlement.expires_at == first
    assert first > datetime.now(timezone.utc) + timedelta(days=27)


def test_invoice_paid_reads_subscription_from_parent_details(db, runtime):
    _, _, request = _subscribed(db, runtime)
    event = _invoice("invoice.paid", subscription=None, parent={"subscription_details": {"subscription": "sub_1"}})
    handle_event(db, runtime, event)
    assert request.entitlement.expires_at == PERIOD_END


def test_invoice_without_subscription_is_skipped(db, runtime):
    _, _, request = _subscribed(db, runtime)
    handle_event(db, runtime, _invoice("invoice.paid", subscription=None))
    assert request.entitlement.expires_at is None


def test_payment_failed_records_failure_without_revoking(db, runtime, recorder):
    _, _, request = _subscribed(db, runtime)
    recorder.clear()
    event = _invoice("invoice.payment_failed", last_finalization_error={"code": "card_declined", "message": "Declined"})

    handle_event(db, runtime, event)
    db.commit()

    assert request.provider_data["failure_code"] == "card_declined"
    assert request.provider_data["failure_message"] == "Declined"
    assert request.provider_data["invoice_id"] == "in_1"
    assert request.entitlement.status == "active"
    assert len(recorder.named("payment_request_changed")) == 1


def test_payment_failed_defaults_message(db, runtime):
    _, _, request = _subscribed(db, runtime)
    handle_event(db, runtime, _invoice("invoice.payment_failed"))
    assert request.provider_data["failure_message"] == "Payment failed"
    assert request.provider_data.get("failure_code") is None


# customer.subscription.updated


@pytest.mark.parametrize(
    "external_status, expected_status, expected_reason",
    [
        ("active", "active", None),
        ("trialing", "active", None),
        ("past_due", "active", None),
        ("canceled", "revoked", "non_renewal"),
        ("unpaid", "revoked", "non_renewal"),
        ("incomplete_expired", "revoked", "non_renewal"),
        ("incomplete", "active", None),
        ("paused", "active", None),
        ("something_new", "active", None),
    ],
)
def test_subscription_updated_status_mapping(db, runtime, recorder, external_status, expected_status, expected_reason):
    _, _, request = _subscribed(db, runtime)
    recorder.clear()

    handle_event(db, runtime, _subscription("customer.subscription.updated", external_status))
    db.commit()

    entitlement = request.entitlement
    assert entitlement.status == expected_status
    assert entitlement.revoke_reason == expected_reason
    assert request.status == "approved"
    changes = recorder.named("entitlement_changed")
    assert len(changes) == (1 if expected_status != "active" else 0)


def test_subscription_updated_active_reactivates_revoked(db, runtime):
    _, _, request = _subscribed(db, runtime)
    handle_event(db, runtime, _subscription("customer.subscription.updated", "canceled"))
    handle_event(db, runtime, _subscription("customer.subscription.updated", "active"))
    assert request.entitlement.status == "active"
    assert request.entitlement.revoke_reason is None


# customer.subscription.deleted


def test_subscription_deleted_revokes_and_expires_request(db, runtime, recorder):
    _, _, request = _subscribed(db, runtime)
    recorder.clear()

    handle_event(db, runtime, _subscription("customer.subscription.deleted", "canceled"))
    db.commit()

    assert request.entitlement.status == "revoked"
    assert request.entitlement.revoke_reason == "non_renewal"
    assert request.status == "expired"
    assert request.expires_at is not None
    assert len(recorder.named("entitlement_changed")) == 1
    assert [args[1:] for args in recorder.named("payment_request_changed")] == [("approved", "expired")]


def test_subscription_deleted_is_idempotent(db, runtime, recorder):
    _, _, request = _subscribed(db, runtime)
    handle_event(db, runtime, _subscription("customer.subscription.deleted", "canceled"))
    db.commit()
    revoked_at = request.entitlement.revoked_at
    expires_at = request.expires_at
    recorder.clear()

    handle_event(db, runtime, _subscription("customer.subscription.deleted", "canceled"))
    db.commit()

    assert request.entitlement.revoked_at == revoked_at
    assert request.expires_at == expires_at
    assert recorder.calls == []



def test_subscription_deleted_expires_refunded_request(db, runtime, recorder):
    _, _, request = _subscribed(db, runtime)
    payment_request_service.set_status(db, runtime.hooks, request, "refunded")
    db.commit()
    recorder.clear()

    handle_event(db, runtime, _subscription("customer.subscription.deleted", "canceled"))
    db.commit()

    assert request.status == "expired"
    assert [args[1:] for args in recorder.named("payment_request_changed")] == [("refunded", "expired")]


def test_subscription_event_for_unknown_subscription_is_a_noop(db, runtime):
    handle_event(db, runtime, _subscription("customer.subscription.deleted", "canceled"))
    handle_event(db, runtime, _subscription("customer.subscription.updated", "active"))


# charge.refunded


def _paid_once(db, runtime):
    _, _, request = _processing_checkout(db, mode="payment", interval="lifetime")
    handle_event(db, runtime, _session_completed(request, mode="payment", subscription=None, payment_intent="pi_1"))
    db.commit()
    return request


def test_charge_refunded_revokes_entitlement(db, runtime, recorder):
    request = _paid_once(db, runtime)
    recorder.clear()

    handle_event(db, runtime, stripe_event("charge.refunded", {"id": "ch_1", "payment_intent": "pi_1"}))
    db.commit()

    assert request.entitlement.status == "revoked"
    assert request.entitlement.revoke_reason == "refund"
    assert len(recorder.named("entitlement_changed")) == 1


def test_charge_refunded_is_idempotent(db, runtime, recorder):
    request = _paid_once(db, runtime)
    event = stripe_event("charge.refunded", {"id": "ch_1", "payment_intent": "pi_1"})
    handle_event(db, runtime, event)
    db.commit()
    recorder.clear()

    handle_event(db, runtime, event)
    db.commit()
    assert recorder.calls == []
    assert request.entitlement.revoke_reason == "refund"


def test_charge_refunded_unknown_intent_is_a_noop(db, runtime):
    request = _paid_once(db, runtime)
    handle_event(db, runtime, stripe_event("charge.refunded", {"id": "ch_2", "payment_intent": "pi_other"}))
    handle_event(db, runtime, stripe_event("charge.refunded", {"id": "ch_3", "payment_intent": None}))
    assert request.entitlement.status == "active"


def test_charge_refunded_ignores_other_providers(db, runtime):
    owner = owner_of(create_account(db))
    wire = create_payment_request(
        db, owner, create_plan(db), provider_key="wire", status="approved", provider_data={"payment_intent_id": "pi_9"}
    )
    assert webhook_handlers.find_payment_request_by_payment_intent(db, "pi_9") is None
    assert wire.status == "approved"


# round trips


def test_subscription_lifecycle_round_trip(db, runtime):
    account, plan, request = _subscribed(db, runtime)
    owner = owner_of(account)

    handle_event(db, runtime, _invoice("invoice.paid"))
    handle_event(db, runtime, _subscription("customer.subscription.updated", "past_due"))
    assert entitlement_service.current_plan(db, owner).id == plan.id

    handle_event(db, runtime, _subscription("customer.subscription.deleted", "canceled"))
    db.commit()
    assert entitlement_service.current_plan(db, owner) is None
    assert request.status == "expired"


def test_handler_failure_leaves_request_actionable(db, runtime, monkeypatch):
    _, _, request = _processing_checkout(db)

    def _boom(*args, **kwargs):
        raise RuntimeError("grant failed")

    monkeypatch.setattr(entitlement_service, "grant_entitlement", _boom)
    with pytest.raises(RuntimeError):
        handle_event(db, runtime, _session_completed(request))
    db.rollback()

    db.refresh(request)
    assert request.status == "processing"
    assert request.provider_ref == "cs_1"
