from __future__ import annotations

import pytest

from app.core.errors import AdminActionError, DomainValidationError, NotFoundError
from app.services import entitlements as entitlement_service
from app.services import payment_requests as payment_request_service
from app.services import plans as plan_service
from app.services import usage_counters
from tests.testkit import create_account, create_payment_request, create_plan, owner_of

ADMIN = "admin:ops@example.com"


def _wire_request(db, runtime, **kwargs):
    account = create_account(db)
    plan = create_plan(db)
    request = create_payment_request(db, owner_of(account), plan, provider_key="wire", status="processing", **kwargs)
    return account, plan, request


# approve / reject / refund


def test_approve_grants_and_records_actor(db, runtime):
    account, plan, request = _wire_request(db, runtime)

    payment_request_service.approve_payment_request(db, runtime, request, actor=ADMIN)

    assert request.status == "approved"
    assert request.resolved_by == ADMIN
    assert request.resolved_at is not None
    assert entitlement_service.current_plan(db, owner_of(account)).id == plan.id


def test_reject_records_note(db, runtime):
    _, _, request = _wire_request(db, runtime)

    payment_request_service.reject_payment_request(db, runtime, request, actor=ADMIN, admin_note="No transfer received")

    assert request.status == "rejected"
    assert request.admin_note == "No transfer received"
    assert request.entitlement is None


@pytest.mark.parametrize("action", ["approve", "reject"])
def test_resolved_request_is_not_actionable(db, runtime, action):
    _, _, request = _wire_request(db, runtime)
    request.status = "rejected"

    with pytest.raises(AdminActionError, match="Request is not actionable"):
        if action == "approve":
            payment_request_service.approve_payment_request(db, runtime, request, actor=ADMIN)
        else:
            payment_request_service.reject_payment_request(db, runtime, request, actor=ADMIN)


def test_unregistered_provider_is_reported(db, runtime):
    _, _, request = _wire_request(db, runtime)
    request.provider_key = "paypal"

    with pytest.raises(AdminActionError, match="Provider not found"):
        payment_request_service.approve_payment_request(db, runtime, request, actor=ADMIN)


def test_gateway_provider_cannot_be_approved_manually(db, runtime):
    owner = owner_of(create_account(db))
    request = create_payment_request(db, owner, create_plan(db), status="processing")

    with pytest.raises(AdminActionError, match="Provider does not support manual approval"):
        payment_request_service.approve_payment_request(db, runtime, request, actor=ADMIN)
    assert request.status == "processing"


def test_refund_requires_refundable_provider(db, runtime):
    _, _, request = _wire_request(db, runtime)
    request.status = "approved"

    with pytest.raises(AdminActionError, match="Provider does not support refunds"):
        payment_request_service.refund_payment_request(db, runtime, request, actor=ADMIN)


def test_refund_requires_approved_request(db, runtime):
    owner = owner_of(create_account(db))
    request = create_payment_request(db, owner, create_plan(db), status="processing")

    with pytest.raises(AdminActionError, match="Request is not approved"):
        payment_request_service.refund_payment_request(db, runtime, request, actor=ADMIN)


def test_get_payment_request_not_found(db):
    with pytest.raises(NotFoundError):
        payment_request_service.get_payment_request(db, "not-a-uuid")


def test_list_payment_requests_filters_and_paginates(db, runtime):
    owner = owner_of(create_account(db))
    for _ in range(3):
        create_payment_request(db, owner, create_plan(db), provider_key="wire", status="rejected")
    create_payment_request(db, owner, create_plan(db), status="approved")

    out = payment_request_service.list_payment_requests(db, provider_key="wire", page=2, per_page=2)
    assert out["total"] == 3
    assert len(out["items"]) == 1
    assert out["page"] == 2

    approved = payment_request_service.list_payment_requests(db, status="approved")
    assert [r.provider_key for r in approved["items"]] == ["stripe"]


def test_provider_admin_details_for_unknown_provider_is_empty(db, runtime):
    _, _, request = _wire_request(db, runtime)
    request.provider_key = "paypal"
    assert payment_request_service.provider_admin_details(db, runtime, request) == {}


# plans


def _plan_values(**overrides):
    values = {
        "name": "Pro",
        "slug": "pro",
        "interval": "monthly",
        "price_cents": 2900,
        "currency": "USD",
        "features": {"api_access": True},
        "limits": {"api_calls": {"limit": 1000, "period": "monthly"}},
        "metadata_": {"stripe_price_id": "price_pro"},
    }
    values.update(overrides)
    return values


def test_create_plan_normalizes_currency(db):
    plan = plan_service.create_plan(db, _plan_values())

    assert plan.currency == "usd"
    assert plan.active is True
    assert plan.limit_for("api_calls") == 1000
    assert plan_service.get_plan_by_slug(db, "pro").id == plan.id


def test_create_plan_collects_field_errors(db):
    values = _plan_values(
        name=" ",
        slug="Not A Slug",
        interval="weekly",
        price_cents=-1,
        currency="dollars",
        limits={"api_calls": {"limit": -5, "period": "hourly"}, "seats": 3},
    )
    with pytest.raises(DomainValidationError) as exc:
        plan_service.create_plan(db, values)

    errors = exc.value.errors
    assert set(errors) == {"name", "slug", "interval", "price_cents", "currency", "limits"}
    assert len(errors["limits"]) == 3


@pytest.mark.parametrize("slug", ["pro-", "_internal", "a__b", "-", "2024_legacy"])
def test_slug_accepts_any_mix_of_lowercase_digits_dash_underscore(db, slug):
    assert plan_service.create_plan(db, _plan_values(slug=slug)).slug == slug


@pytest.mark.parametrize("slug", ["Pro", "pro plan", "pro.v2", ""])
def test_slug_rejects_other_characters(db, slug):
    with pytest.raises(DomainValidationError) as exc:
        plan_service.create_plan(db, _plan_values(slug=slug))
    assert "slug" in exc.value.errors


def test_slug_must_be_unique(db):
    plan_service.create_plan(db, _plan_values())
    with pytest.raises(DomainValidationError) as exc:
        plan_service.create_plan(db, _plan_values(name="Pro 2"))
    assert exc.value.errors["slug"] == ["has already been taken"]


def test_update_plan_keeps_own_slug(db):
    plan = plan_service.create_plan(db, _plan_values())
    plan_service.update_plan(db, plan, {"slug": "pro", "price_cents": 3900, "active": False})

    assert plan.price_cents == 3900
    assert plan.active is False
    assert plan_service.list_plans(db, active_only=True) == []
    assert plan_service.list_plans(db) == [plan]


def test_get_plan_not_found(db):
    with pytest.raises(NotFoundError, match="Plan not found"):
        plan_service.get_plan(db, "00000000-0000-0000-0000-000000000000")
    with pytest.raises(NotFoundError):
        plan_service.get_plan_by_slug(db, "missing")


def test_delete_unused_plan(db):
    plan = plan_service.create_plan(db, _plan_values())
    plan_service.delete_plan(db, plan)
    assert plan_service.list_plans(db) == []


def test_delete_plan_blocked_by_entitlements(db, runtime):
    plan = plan_service.create_plan(db, _plan_values())
    entitlement_service.grant_entitlement(db, runtime, owner_of(create_account(db)), plan=plan, provider="wire")

    with pytest.raises(AdminActionError, match="Plan is referenced by entitlements"):
        plan_service.delete_plan(db, plan)


def test_delete_plan_blocked_by_payment_requests(db):
    plan = plan_service.create_plan(db, _plan_values())
    create_payment_request(db, owner_of(create_account(db)), plan, status="rejected")

    with pytest.raises(AdminActionError, match="Plan is referenced by payment requests"):
        plan_service.delete_plan(db, plan)


def test_delete_plan_blocked_by_usage_counters(db):
    plan = plan_service.create_plan(db, _plan_values())
    usage_counters.find_or_create_counter(
        db, owner_of(create_account(db)), metric="api_calls", period_key="2026-10", plan_id=plan.id, limit=1000
    )

    with pytest.raises(AdminActionError, match="Plan is referenced by usage counters"):
        plan_service.delete_plan(db, plan)
