from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

import sqlalchemy as sa
from sqlalchemy.orm import Session

from app.core.errors import AdminActionError, DomainValidationError, NotFoundError
from app.core.hooks import LifecycleHooks
from app.core.security import now_utc
from app.models.payment_request import ACTIONABLE_STATUSES, PAYMENT_REQUEST_STATUSES, PaymentRequest
from app.services import notifications

if TYPE_CHECKING:
    from app.services.runtime import EntitlementsRuntime

logger = logging.getLogger(__name__)

EXPIRATION_ACTOR = "system:expiration"


def set_status(db: Session, hooks: LifecycleHooks, request: PaymentRequest, status: str, **fields: Any) -> bool:
    """Apply ``status`` and ``fields``; notify only when the status actually moves.

    Returns True when the status changed.
    """
    if status not in PAYMENT_REQUEST_STATUSES:
        raise DomainValidationError({"status": ["is not included in the list"]})
    old_status = request.status
    for name, value in fields.items():
        setattr(request, name, value)
    request.status = status
    changed = old_status != status
    if changed:
        notifications.enqueue(db, hooks.after_payment_request_changed, request, old_status, status)
    return changed


def merge_provider_data(request: PaymentRequest, **values: Any) -> dict:
    data = dict(request.provider_data or {})
    data.update(values)
    request.provider_data = data
    return data


def validate_payment_request(runtime: "EntitlementsRuntime", request: PaymentRequest) -> None:
    errors: dict[str, list[str]] = {}
    if not request.requestable_type or not request.requestable_id:
        errors.setdefault("requestable", []).append("must exist")
    if request.plan_id is None and request.plan is None:
        errors.setdefault("plan", []).append("must exist")
    if not request.provider_key:
        errors.setdefault("provider_key", []).append("can't be blank")
    elif runtime.providers.find(request.provider_key) is None:
        errors.setdefault("provider_key", []).append("is not a registered provider")
    if request.status not in PAYMENT_REQUEST_STATUSES:
        errors.setdefault("status", []).append("is not included in the list")
    if request.amount_cents is None or request.amount_cents < 0:
        errors.setdefault("amount_cents", []).append("must be greater than or equal to 0")
    if not request.currency:
        errors.setdefault("currency", []).append("can't be blank")
    if errors:
        raise DomainValidationError(errors)


def get_payment_request(db: Session, request_id: str | UUID) -> PaymentRequest:
    try:
        key = request_id if isinstance(request_id, UUID) else UUID(str(request_id))
    except ValueError:
        raise NotFoundError("Payment request not found")
    request = db.get(PaymentRequest, key)
    if request is None:
        raise NotFoundError("Payment request not found")
    return request


def find_by_provider_ref(
    db: Session, provider_key: str, provider_ref: str, *, for_update: bool = False
) -> PaymentRequest | None:
    stmt = (
        sa.select(PaymentRequest)
        .where(PaymentRequest.provider_key == provider_key, PaymentRequest.provider_ref == provider_ref)
        .order_by(PaymentRequest.created_at.desc())
        .limit(1)
    )
    if for_update:
        stmt = stmt.with_for_update()
    return db.execute(stmt).scalar_one_or_none()


def find_actionable(db: Session, requestable_type: str, requestable_id: str, plan_id) -> PaymentRequest | None:
    return db.execute(
        sa.select(PaymentRequest).where(
            PaymentRequest.requestable_type == requestable_type,
            PaymentRequest.requestable_id == requestable_id,
            PaymentRequest.plan_id == plan_id,
            PaymentRequest.status.in_(ACTIONABLE_STATUSES),
        )
    ).scalar_one_or_none()


def list_payment_requests(
    db: Session,
    *,
    status: str | None = None,
    provider_key: str | None = None,
    requestable_type: str | None = None,
    page: int = 1,
    per_page: int = 20,
) -> dict[str, Any]:
    query = sa.select(PaymentRequest)
    if status:
        query = query.where(PaymentRequest.status == status)
    if provider_key:
        query = query.where(PaymentRequest.provider_key == provider_key)
    if requestable_type:
        query = query.where(PaymentRequest.requestable_type == requestable_type)

    total = db.execute(sa.select(sa.func.count()).select_from(query.subquery())).scalar_one()
    page = max(int(page or 1), 1)
    rows = (
        db.execute(
            query.order_by(PaymentRequest.created_at.desc(), PaymentRequest.id.desc())
            .offset((page - 1) * per_page)
            .limit(per_page)
        )
        .scalars()
        .all()
    )
    return {"items": rows, "total": total, "page": page, "per_page": per_page}


def _provider_for(runtime: "EntitlementsRuntime", db: Session, request: PaymentRequest):
    definition = runtime.providers.find(request.provider_key)
    if definition is None:
        raise AdminActionError("Provider not found")
    return definition, definition.provider_class(db, runtime, request)


def provider_admin_details(db: Session, runtime: "EntitlementsRuntime", request: PaymentRequest) -> dict[str, str]:
    definition = runtime.providers.find(request.provider_key)
    if definition is None:
        return {}
    return definition.provider_class(db, runtime, request).admin_details()


def approve_payment_request(
    db: Session, runtime: "EntitlementsRuntime", request: PaymentRequest, *, actor: str
) -> PaymentRequest:
    definition, provider = _provider_for(runtime, db, request)
    if not request.is_actionable:
        raise AdminActionError("Request is not actionable")
    if "approve" not in definition.admin_actions:
        raise AdminActionError("Provider does not support manual approval")

    provider.complete({})
    request.resolved_by = actor
    request.resolved_at = now_utc()
    db.flush()
    logger.info("Payment request %s approved by %s", request.id, actor)
    return request


def reject_payment_request(
    db: Session,
    runtime: "EntitlementsRuntime",
    request: PaymentRequest,
    *,
    actor: str,
    admin_note: str | None = None,
) -> PaymentRequest:
    definition, provider = _provider_for(runtime, db, request)
    if not request.is_actionable:
        raise AdminActionError("Request is not actionable")
    if "reject" not in definition.admin_actions:
        raise AdminActionError("Provider does not support manual rejection")

    provider.reject({})
    request.resolved_by = actor
    request.resolved_at = now_utc()
    request.admin_note = admin_note
    db.flush()
    logger.info("Payment request %s rejected by %s", request.id, actor)
    return request


def refund_payment_request(
    db: Session, runtime: "EntitlementsRuntime", request: PaymentRequest, *, actor: str
) -> PaymentRequest:
    definition, provider = _provider_for(runtime, db, request)
    if not definition.refundable:
        raise AdminActionError("Provider does not support refunds")
    if request.status != "approved":
        raise AdminActionError("Request is not approved")

    provider.refund({})
    request.resolved_by = actor
    request.resolved_at = now_utc()
    db.flush()
    logger.info("Payment request %s refunded by %s", request.id, actor)
    return request


def expire_due_payment_requests(db: Session, hooks: LifecycleHooks, *, now: datetime | None = None) -> int:
    now = now or now_utc()
    due = (
        db.execute(
            sa.select(PaymentRequest).where(
                PaymentRequest.status.in_(ACTIONABLE_STATUSES),
                PaymentRequest.expires_at.is_not(None),
                PaymentRequest.expires_at <= now,
            )
        )
        .scalars()
        .all()
    )
    for request in due:
        set_status(db, hooks, request, "expired", resolved_by=EXPIRATION_ACTOR, resolved_at=now)
    db.flush()
    if due:
        logger.info("Expired %s payment requests", len(due))
    return len(due)
