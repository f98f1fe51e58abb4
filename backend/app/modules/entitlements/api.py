from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from app.api.deps import get_runtime, require_api_client
from app.core.errors import (
    DomainValidationError,
    MissingIntegrationDataError,
    NotFoundError,
    ProviderNotAvailableError,
    UsageError,
)
from app.db.session import get_db
from app.schemas.entitlements import (
    EntitlementOut,
    EntitlementRevokeIn,
    OwnerSummaryOut,
    PaymentRequestCreateIn,
    PaymentRequestCreateOut,
    UsageHistoryRowOut,
    UsageIncrementIn,
    UsageIncrementOut,
    UsageMetricOut,
)
from app.schemas.plans import PlanOut
from app.services import entitlements as entitlement_service
from app.services.owners import OwnerRef
from app.services.plans import get_plan_by_slug
from app.services.runtime import EntitlementsRuntime

router = APIRouter()


def _owner(runtime: EntitlementsRuntime, owner_type: str, owner_id: str) -> OwnerRef:
    if not runtime.owners.is_registered(owner_type):
        raise HTTPException(404, f"Unknown owner type '{owner_type}'")
    return OwnerRef.of(owner_type, owner_id)


def _usage_for(db: Session, owner: OwnerRef, metric: str, period: str | None, limit: int | None) -> UsageMetricOut:
    return UsageMetricOut(
        metric=metric,
        period=period,
        limit=limit,
        remaining=entitlement_service.remaining(db, owner, metric),
        within_limit=entitlement_service.within_limit(db, owner, metric),
    )


@router.get("/{owner_type}/{owner_id}", response_model=OwnerSummaryOut)
def owner_summary(
    owner_type: str,
    owner_id: str,
    _client=Depends(require_api_client),
    db: Session = Depends(get_db),
    runtime: EntitlementsRuntime = Depends(get_runtime),
):
    owner = _owner(runtime, owner_type, owner_id)
    entitlement = entitlement_service.current_entitlement(db, owner)
    plan = entitlement.plan if entitlement else None

    usage = []
    if plan is not None:
        for metric, config in sorted((plan.limits or {}).items()):
            if isinstance(config, dict):
                usage.append(_usage_for(db, owner, metric, config.get("period"), config.get("limit")))

    return OwnerSummaryOut(
        owner_type=owner.owner_type,
        owner_id=owner.owner_id,
        plan=PlanOut.model_validate(plan) if plan else None,
        entitlement=EntitlementOut.model_validate(entitlement) if entitlement else None,
        features={k: v is True for k, v in (plan.features or {}).items()} if plan else {},
        usage=usage,
        pending_payment_request_ids=[r.id for r in entitlement_service.pending_payment_requests(db, owner)],
    )


@router.get("/{owner_type}/{owner_id}/features/{feature}")
def owner_feature(
    owner_type: str,
    owner_id: str,
    feature: str,
    _client=Depends(require_api_client),
    db: Session = Depends(get_db),
    runtime: EntitlementsRuntime = Depends(get_runtime),
):
    owner = _owner(runtime, owner_type, owner_id)
    return {"feature": feature, "entitled": entitlement_service.is_entitled_to(db, owner, feature)}


@router.post("/{owner_type}/{owner_id}/usage", response_model=UsageIncrementOut)
def increment_usage(
    owner_type: str,
    owner_id: str,
    payload: UsageIncrementIn,
    _client=Depends(require_api_client),
    db: Session = Depends(get_db),
    runtime: EntitlementsRuntime = Depends(get_runtime),
):
    owner = _owner(runtime, owner_type, owner_id)
    try:
        value = entitlement_service.increment_usage(db, runtime, owner, payload.metric, payload.by)
        db.commit()
    except UsageError as exc:
        db.rollback()
        raise HTTPException(422, exc.message)

    plan = entitlement_service.current_plan(db, owner)
    limit = plan.limit_for(payload.metric) if plan else None
    return UsageIncrementOut(
        metric=payload.metric,
        current_value=value,
        limit=limit,
        remaining=None if limit is None else max(limit - value, 0),
        within_limit=limit is None or value < limit,
    )


@router.get("/{owner_type}/{owner_id}/usage/{metric}", response_model=list[UsageHistoryRowOut])
def usage_history(
    owner_type: str,
    owner_id: str,
    metric: str,
    limit: int = Query(default=30, ge=1, le=365),
    _client=Depends(require_api_client),
    db: Session = Depends(get_db),
    runtime: EntitlementsRuntime = Depends(get_runtime),
):
    owner = _owner(runtime, owner_type, owner_id)
    return entitlement_service.usage_history(db, owner, metric, limit)


@router.post("/{owner_type}/{owner_id}/payment-requests", response_model=PaymentRequestCreateOut)
def create_payment_request(
    owner_type: str,
    owner_id: str,
    payload: PaymentRequestCreateIn,
    _client=Depends(require_api_client),
    db: Session = Depends(get_db),
    runtime: EntitlementsRuntime = Depends(get_runtime),
):
    owner = _owner(runtime, owner_type, owner_id)
    try:
        plan = get_plan_by_slug(db, payload.plan_slug)
        result = entitlement_service.request_payment(
            db,
            runtime,
            owner,
            plan=plan,
            provider=payload.provider,
            amount_cents=payload.amount_cents,
            currency=payload.currency.lower() if payload.currency else None,
            metadata=payload.metadata,
        )
        if result.get("error") == "duplicate_request":
            existing = result["existing"]
            db.rollback()
            return PaymentRequestCreateOut(
                payment_request_id=existing.id, status=existing.status, error="duplicate_request"
            )
        db.commit()
    except NotFoundError as exc:
        db.rollback()
        raise HTTPException(404, exc.message)
    except ProviderNotAvailableError as exc:
        db.rollback()
        raise HTTPException(400, exc.message)
    except MissingIntegrationDataError as exc:
        db.rollback()
        raise HTTPException(422, exc.message)
    except DomainValidationError as exc:
        db.rollback()
        raise HTTPException(422, exc.errors)

    created = result["payment_request"]
    return PaymentRequestCreateOut(
        payment_request_id=created.id,
        status=created.status,
        redirect_url=result.get("redirect_url"),
        instructions=result.get("instructions"),
    )


@router.post("/{owner_type}/{owner_id}/revoke", response_model=EntitlementOut | None)
def revoke(
    owner_type: str,
    owner_id: str,
    payload: EntitlementRevokeIn,
    _client=Depends(require_api_client),
    db: Session = Depends(get_db),
    runtime: EntitlementsRuntime = Depends(get_runtime),
):
    owner = _owner(runtime, owner_type, owner_id)
    try:
        entitlement = entitlement_service.revoke_entitlement(db, runtime, owner, payload.reason)
        db.commit()
    except DomainValidationError as exc:
        db.rollback()
        raise HTTPException(422, exc.errors)
    return EntitlementOut.model_validate(entitlement) if entitlement else None
