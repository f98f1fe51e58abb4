from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from app.api.deps import actor_of, get_runtime, require_admin
from app.core.config import settings
from app.core.errors import AdminActionError, DomainValidationError, NotFoundError
from app.db.session import get_db
from app.schemas.admin import (
    PaymentRequestDetailOut,
    PaymentRequestListOut,
    PaymentRequestOut,
    PaymentRequestRejectIn,
    ProviderOut,
    UsageCounterListOut,
    UsageCounterOut,
    UsageTrendOut,
    UsageTrendPointOut,
)
from app.schemas.plans import PlanCreateIn, PlanOut, PlanUpdateIn
from app.services import payment_requests as payment_request_service
from app.services import plans as plan_service
from app.services import usage_counters
from app.services.runtime import EntitlementsRuntime

router = APIRouter()


def _detail(db: Session, runtime: EntitlementsRuntime, request) -> PaymentRequestDetailOut:
    definition = runtime.providers.find(request.provider_key)
    out = PaymentRequestDetailOut.model_validate(request)
    out.provider_data = dict(request.provider_data or {})
    out.admin_details = payment_request_service.provider_admin_details(db, runtime, request)
    if definition is not None:
        out.provider_label = definition.label
        out.admin_actions = list(definition.admin_actions)
        out.refundable = definition.refundable
    return out


def _plan_values(payload) -> dict:
    values = payload.model_dump(exclude_unset=True)
    if "metadata" in values:
        values["metadata_"] = values.pop("metadata")
    if values.get("limits") is not None:
        values["limits"] = {
            metric: {k: v for k, v in config.items() if v is not None} for metric, config in values["limits"].items()
        }
    return values


# Providers


@router.get("/providers", response_model=list[ProviderOut])
def list_providers(_admin=Depends(require_admin), runtime: EntitlementsRuntime = Depends(get_runtime)):
    return [
        ProviderOut(
            key=d.key,
            label=d.label,
            enabled=runtime.providers.is_enabled(d.key),
            manual_resolution=d.manual_resolution,
            admin_actions=list(d.admin_actions),
            refundable=d.refundable,
        )
        for d in runtime.providers.all()
    ]


# Payment requests


@router.get("/payment-requests", response_model=PaymentRequestListOut)
def list_payment_requests(
    status: str | None = Query(default=None),
    provider_key: str | None = Query(default=None),
    requestable_type: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    _admin=Depends(require_admin),
    db: Session = Depends(get_db),
):
    out = payment_request_service.list_payment_requests(
        db,
        status=status,
        provider_key=provider_key,
        requestable_type=requestable_type,
        page=page,
        per_page=settings.ADMIN_PAYMENT_REQUESTS_PER_PAGE,
    )
    return PaymentRequestListOut(
        items=[PaymentRequestOut.model_validate(r) for r in out["items"]],
        total=out["total"],
        page=out["page"],
        per_page=out["per_page"],
    )


@router.get("/payment-requests/{request_id}", response_model=PaymentRequestDetailOut)
def show_payment_request(
    request_id: str,
    _admin=Depends(require_admin),
    db: Session = Depends(get_db),
    runtime: EntitlementsRuntime = Depends(get_runtime),
):
    try:
        request = payment_request_service.get_payment_request(db, request_id)
    except NotFoundError as exc:
        raise HTTPException(404, exc.message)
    return _detail(db, runtime, request)


def _resolve(db: Session, runtime: EntitlementsRuntime, request_id: str, action) -> PaymentRequestDetailOut:
    try:
        request = payment_request_service.get_payment_request(db, request_id)
        action(request)
        db.commit()
    except NotFoundError as exc:
        db.rollback()
        raise HTTPException(404, exc.message)
    except AdminActionError as exc:
        db.rollback()
        raise HTTPException(409, exc.message)
    except DomainValidationError as exc:
        db.rollback()
        raise HTTPException(422, exc.errors)
    return _detail(db, runtime, request)


@router.post("/payment-requests/{request_id}/approve", response_model=PaymentRequestDetailOut)
def approve_payment_request(
    request_id: str,
    admin=Depends(require_admin),
    db: Session = Depends(get_db),
    runtime: EntitlementsRuntime = Depends(get_runtime),
):
    return _resolve(
        db,
        runtime,
        request_id,
        lambda r: payment_request_service.approve_payment_request(db, runtime, r, actor=actor_of(admin)),
    )


@router.post("/payment-requests/{request_id}/reject", response_model=PaymentRequestDetailOut)
def reject_payment_request(
    request_id: str,
    payload: PaymentRequestRejectIn,
    admin=Depends(require_admin),
    db: Session = Depends(get_db),
    runtime: EntitlementsRuntime = Depends(get_runtime),
):
    return _resolve(
        db,
        runtime,
        request_id,
        lambda r: payment_request_service.reject_payment_request(
            db, runtime, r, actor=actor_of(admin), admin_note=payload.admin_note
        ),
    )


@router.post("/payment-requests/{request_id}/refund", response_model=PaymentRequestDetailOut)
def refund_payment_request(
    request_id: str,
    admin=Depends(require_admin),
    db: Session = Depends(get_db),
    runtime: EntitlementsRuntime = Depends(get_runtime),
):
    return _resolve(
        db,
        runtime,
        request_id,
        lambda r: payment_request_service.refund_payment_request(db, runtime, r, actor=actor_of(admin)),
    )


# Usage counters


@router.get("/usage-counters", response_model=UsageCounterListOut)
def list_usage_counters(
    metric: str | None = Query(default=None),
    period_key: str | None = Query(default=None),
    countable_type: str | None = Query(default=None),
    sort: str | None = Query(default=None),
    direction: str | None = Query(default=None, pattern="^(asc|desc)$"),
    page: int = Query(default=1, ge=1),
    _admin=Depends(require_admin),
    db: Session = Depends(get_db),
):
    out = usage_counters.list_usage_counters(
        db,
        metric=metric,
        period_key=period_key,
        countable_type=countable_type,
        sort=sort,
        direction=direction,
        page=page,
        per_page=settings.ADMIN_USAGE_COUNTERS_PER_PAGE,
    )
    out["items"] = [UsageCounterOut.model_validate(c) for c in out["items"]]
    return UsageCounterListOut(**out)


@router.get("/usage-counters/trend", response_model=UsageTrendOut)
def usage_trend(
    metric: str = Query(min_length=1),
    countable_type: str | None = Query(default=None),
    countable_id: str | None = Query(default=None),
    _admin=Depends(require_admin),
    db: Session = Depends(get_db),
):
    rows = usage_counters.usage_trend(
        db,
        metric,
        countable_type=countable_type,
        countable_id=countable_id,
        buckets=settings.ADMIN_USAGE_TREND_BUCKETS,
    )
    return UsageTrendOut(metric=metric, points=[UsageTrendPointOut(period_key=k, total=v) for k, v in rows])


# Plans


@router.get("/plans", response_model=list[PlanOut])
def list_plans(_admin=Depends(require_admin), db: Session = Depends(get_db)):
    return [PlanOut.model_validate(p) for p in plan_service.list_plans(db)]


@router.post("/plans", response_model=PlanOut, status_code=201)
def create_plan(payload: PlanCreateIn, _admin=Depends(require_admin), db: Session = Depends(get_db)):
    try:
        plan = plan_service.create_plan(db, _plan_values(payload))
        db.commit()
    except DomainValidationError as exc:
        db.rollback()
        raise HTTPException(422, exc.errors)
    return PlanOut.model_validate(plan)


@router.patch("/plans/{plan_id}", response_model=PlanOut)
def update_plan(plan_id: str, payload: PlanUpdateIn, _admin=Depends(require_admin), db: Session = Depends(get_db)):
    try:
        plan = plan_service.get_plan(db, plan_id)
        plan_service.update_plan(db, plan, _plan_values(payload))
        db.commit()
    except NotFoundError as exc:
        db.rollback()
        raise HTTPException(404, exc.message)
    except DomainValidationError as exc:
        db.rollback()
        raise HTTPException(422, exc.errors)
    return PlanOut.model_validate(plan)


@router.delete("/plans/{plan_id}", status_code=204)
def delete_plan(plan_id: str, _admin=Depends(require_admin), db: Session = Depends(get_db)):
    try:
        plan = plan_service.get_plan(db, plan_id)
        plan_service.delete_plan(db, plan)
        db.commit()
    except NotFoundError as exc:
        db.rollback()
        raise HTTPException(404, exc.message)
    except AdminActionError as exc:
        db.rollback()
        raise HTTPException(409, exc.message)
