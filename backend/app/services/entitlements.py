from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa
from sqlalchemy.orm import Session

from app.core.errors import DomainValidationError, ProviderNotAvailableError, UsageError
from app.core.security import now_utc
from app.models.entitlement import ENTITLEMENT_STATUSES, REVOKE_REASONS, Entitlement
from app.models.payment_request import ACTIONABLE_STATUSES, PaymentRequest
from app.models.plan import Plan
from app.models.usage_counter import UsageCounter
from app.services import notifications
from app.services import payment_requests as payment_request_service
from app.services import usage_counters
from app.services.owners import OwnerRef
from app.services.period_key import current_key

if TYPE_CHECKING:
    from app.services.runtime import EntitlementsRuntime

logger = logging.getLogger(__name__)


# Entitlement state machine


def validate_entitlement(runtime: "EntitlementsRuntime", entitlement: Entitlement) -> None:
    errors: dict[str, list[str]] = {}
    if entitlement.status not in ENTITLEMENT_STATUSES:
        errors.setdefault("status", []).append("is not included in the list")
    if not entitlement.provider:
        errors.setdefault("provider", []).append("can't be blank")
    elif runtime.providers.find(entitlement.provider) is None:
        errors.setdefault("provider", []).append("is not a registered provider")
    if entitlement.revoke_reason is not None and entitlement.revoke_reason not in REVOKE_REASONS:
        errors.setdefault("revoke_reason", []).append("is not included in the list")
    if entitlement.status == "revoked" and entitlement.revoke_reason is None:
        errors.setdefault("revoke_reason", []).append("can't be blank when revoked")
    if entitlement.status != "revoked" and entitlement.revoke_reason is not None:
        errors.setdefault("revoke_reason", []).append("must be blank unless revoked")
    if errors:
        raise DomainValidationError(errors)


def _status_changed(
    db: Session, runtime: "EntitlementsRuntime", entitlement: Entitlement, old_status: str | None
) -> None:
    notifications.enqueue(db, runtime.hooks.after_entitlement_changed, entitlement, old_status, entitlement.status)
    if entitlement.status == "active":
        usage_counters.create_counters_for(db, runtime, entitlement)


def set_entitlement_status(
    db: Session,
    runtime: "EntitlementsRuntime",
    entitlement: Entitlement,
    status: str,
    *,
    allow_reactivation: bool = False,
    **fields: Any,
) -> bool:
    """Apply a status change plus ``fields``.

    The changed-callback is queued only when the status moves; moving to
    ``active`` provisions usage counters. A revoked or expired entitlement only
    comes back when the gateway renews it (``allow_reactivation``). Returns True
    when the status changed.
    """
    old_status = entitlement.status
    if old_status in ("revoked", "expired") and status in ("pending", "active") and not allow_reactivation:
        raise DomainValidationError({"status": [f"cannot move from {old_status} to {status}"]})

    for name, value in fields.items():
        setattr(entitlement, name, value)
    entitlement.status = status
    if status != "revoked":
        entitlement.revoke_reason = None
        entitlement.revoked_at = None
    validate_entitlement(runtime, entitlement)
    db.flush()

    changed = old_status != status
    if changed:
        _status_changed(db, runtime, entitlement, old_status)
    return changed


def activate_entitlement(
    db: Session, runtime: "EntitlementsRuntime", entitlement: Entitlement, *, allow_reactivation: bool = False
) -> bool:
    if entitlement.status == "active":
        return False
    return set_entitlement_status(
        db,
        runtime,
        entitlement,
        "active",
        allow_reactivation=allow_reactivation,
        activated_at=now_utc(),
    )


def expire_entitlement(db: Session, runtime: "EntitlementsRuntime", entitlement: Entitlement) -> bool:
    if entitlement.status in ("expired", "revoked"):
        return False
    return set_entitlement_status(db, runtime, entitlement, "expired")


def revoke_entitlement_record(
    db: Session, runtime: "EntitlementsRuntime", entitlement: Entitlement, reason: str
) -> bool:
    """Revoke unless already revoked. Returns True when something changed."""
    if entitlement.status == "revoked":
        return False
    return set_entitlement_status(
        db,
        runtime,
        entitlement,
        "revoked",
        revoked_at=now_utc(),
        revoke_reason=str(reason),
    )


def find_by_provider_ref(db: Session, provider_ref: str) -> Entitlement | None:
    return db.execute(
        sa.select(Entitlement)
        .where(Entitlement.provider_ref == provider_ref)
        .order_by(Entitlement.created_at.desc())
        .limit(1)
    ).scalar_one_or_none()


def expire_due_entitlements(db: Session, runtime: "EntitlementsRuntime", *, now: datetime | None = None) -> int:
    now = now or now_utc()
    due = (
        db.execute(
            sa.select(Entitlement).where(
                Entitlement.status == "active",
                Entitlement.expires_at.is_not(None),
                Entitlement.expires_at <= now,
            )
        )
        .scalars()
        .all()
    )
    for entitlement in due:
        expire_entitlement(db, runtime, entitlement)
    if due:
        logger.info("Expired %s entitlements", len(due))
    return len(due)


# Owner capability


def _owner_entitlements(owner: OwnerRef):
    return sa.select(Entitlement).where(
        Entitlement.entitleable_type == owner.owner_type,
        Entitlement.entitleable_id == owner.owner_id,
    )


def current_entitlement(db: Session, owner: OwnerRef) -> Entitlement | None:
    return db.execute(
        _owner_entitlements(owner)
        .where(Entitlement.status == "active")
        .order_by(Entitlement.created_at.desc(), Entitlement.activated_at.desc())
        .limit(1)
    ).scalar_one_or_none()


def current_plan(db: Session, owner: OwnerRef) -> Plan | None:
    entitlement = current_entitlement(db, owner)
    return entitlement.plan if entitlement else None


def is_entitled_to(db: Session, owner: OwnerRef, feature: str) -> bool:
    plan = current_plan(db, owner)
    return plan.has_feature(feature) if plan else False


def _current_period_counter(db: Session, owner: OwnerRef, plan: Plan, metric: str, period: str | None):
    return usage_counters.find_counter(db, owner, str(metric), current_key(period), plan.id)


def within_limit(db: Session, owner: OwnerRef, metric: str) -> bool:
    plan = current_plan(db, owner)
    if plan is None:
        return False
    config = plan.limit_config_for(metric)
    if config is None or config.get("limit") is None:
        return True
    counter = _current_period_counter(db, owner, plan, metric, config.get("period"))
    if counter is None:
        return True
    return counter.current_value < config["limit"]


def remaining(db: Session, owner: OwnerRef, metric: str) -> int | None:
    plan = current_plan(db, owner)
    if plan is None:
        return None
    config = plan.limit_config_for(metric)
    if config is None or config.get("limit") is None:
        return None
    counter = _current_period_counter(db, owner, plan, metric, config.get("period"))
    if counter is None:
        return config["limit"]
    return max(config["limit"] - counter.current_value, 0)


def grant_entitlement(
    db: Session,
    runtime: "EntitlementsRuntime",
    owner: OwnerRef,
    *,
    plan: Plan,
    provider: str,
    expires_at: datetime | None = None,
    metadata: dict | None = None,
) -> Entitlement:
    """Grant ``plan`` to ``owner``, revoking the current entitlement as an upgrade."""
    current = current_entitlement(db, owner)
    old_plan = current.plan if current else None
    if current is not None:
        revoke_entitlement_record(db, runtime, current, "upgrade")

    entitlement = Entitlement(
        entitleable_type=owner.owner_type,
        entitleable_id=owner.owner_id,
        plan=plan,
        plan_id=plan.id,
        provider=str(provider),
        status="active",
        activated_at=now_utc(),
        expires_at=expires_at,
        metadata_=dict(metadata or {}),
    )
    validate_entitlement(runtime, entitlement)
    db.add(entitlement)
    db.flush()
    _status_changed(db, runtime, entitlement, None)

    if old_plan is not None and old_plan.id != plan.id:
        usage_counters.handle_plan_change(db, runtime, owner, old_plan=old_plan, new_plan=plan)
        notifications.enqueue(db, runtime.hooks.after_plan_changed, owner, old_plan, plan)

    logger.info("Granted plan %s to %s via %s", plan.slug, owner, provider)
    return entitlement


def revoke_entitlement(db: Session, runtime: "EntitlementsRuntime", owner: OwnerRef, reason: str = "admin") -> Entitlement | None:
    entitlement = current_entitlement(db, owner)
    if entitlement is None:
        return None
    revoke_entitlement_record(db, runtime, entitlement, reason)
    return entitlement


def increment_usage(db: Session, runtime: "EntitlementsRuntime", owner: OwnerRef, metric: str, by: int = 1) -> int:
    plan = current_plan(db, owner)
    if plan is None:
        raise UsageError(f"No current plan for metric: {metric}")
    config = plan.limit_config_for(metric)
    if config is None:
        raise UsageError(f"No limit defined for metric: {metric}")

    counter = usage_counters.find_or_create_counter(
        db,
        owner,
        metric=str(metric),
        period_key=current_key(config.get("period")),
        plan_id=plan.id,
        limit=config.get("limit"),
    )
    return usage_counters.increment_counter(db, runtime.hooks, counter, by)


def usage_history(db: Session, owner: OwnerRef, metric: str, limit: int = 30) -> list[UsageCounter]:
    return usage_counters.recent_periods(db, str(metric), limit, owner=owner)


def pending_payment_requests(db: Session, owner: OwnerRef) -> list[PaymentRequest]:
    return list(
        db.execute(
            sa.select(PaymentRequest)
            .where(
                PaymentRequest.requestable_type == owner.owner_type,
                PaymentRequest.requestable_id == owner.owner_id,
                PaymentRequest.status.in_(ACTIONABLE_STATUSES),
            )
            .order_by(PaymentRequest.created_at.desc())
        ).scalars()
    )


def request_payment(
    db: Session,
    runtime: "EntitlementsRuntime",
    owner: OwnerRef,
    *,
    plan: Plan,
    provider: str,
    amount_cents: int | None = None,
    currency: str | None = None,
    metadata: dict | None = None,
) -> dict[str, Any]:
    """Create a payment request and start the provider flow.

    Returns the provider's result (``instructions`` or ``redirect_url``) plus
    the created ``payment_request``, or
    ``{"error": "duplicate_request", "existing": request}`` when an actionable
    request for the same plan already exists.
    """
    definition = runtime.providers.find(provider)
    if definition is None:
        raise ProviderNotAvailableError(f"Provider :{provider} is not registered")
    if not runtime.providers.is_enabled(definition.key):
        raise ProviderNotAvailableError(f"Provider :{provider} is disabled")

    existing = payment_request_service.find_actionable(db, owner.owner_type, owner.owner_id, plan.id)
    if existing is not None:
        return {"error": "duplicate_request", "existing": existing}

    expiry_hours = runtime.settings.get("entitlements.payment_request_expiry_hours")
    request = PaymentRequest(
        requestable_type=owner.owner_type,
        requestable_id=owner.owner_id,
        plan=plan,
        plan_id=plan.id,
        provider_key=definition.key,
        status="pending",
        amount_cents=plan.price_cents if amount_cents is None else amount_cents,
        currency=currency or plan.currency or runtime.settings.get("entitlements.default_currency"),
        provider_data={},
        metadata_=dict(metadata or {}),
        expires_at=(now_utc() + timedelta(hours=int(expiry_hours))) if expiry_hours else None,
    )
    payment_request_service.validate_payment_request(runtime, request)
    db.add(request)
    db.flush()

    provider_instance = definition.provider_class(db, runtime, request)
    result = dict(provider_instance.initiate() or {})
    result["payment_request"] = request
    return result
