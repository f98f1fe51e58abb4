from __future__ import annotations

import logging
import re
from typing import Any
from uuid import UUID

import sqlalchemy as sa
from sqlalchemy.orm import Session

from app.core.errors import AdminActionError, DomainValidationError, NotFoundError
from app.models.entitlement import Entitlement
from app.models.payment_request import PaymentRequest
from app.models.plan import LIMIT_PERIODS, PLAN_INTERVALS, Plan
from app.models.usage_counter import UsageCounter

logger = logging.getLogger(__name__)

SLUG_RE = re.compile(r"^[a-z0-9_-]+$")
CURRENCY_RE = re.compile(r"^[a-z]{3}$")

EDITABLE_FIELDS = ("name", "slug", "interval", "price_cents", "currency", "features", "limits", "metadata_", "active")


def validate_plan(db: Session, plan: Plan) -> None:
    errors: dict[str, list[str]] = {}
    if not (plan.name or "").strip():
        errors.setdefault("name", []).append("can't be blank")
    if not plan.slug or not SLUG_RE.match(plan.slug):
        errors.setdefault("slug", []).append("must be lowercase letters, digits, '-' or '_'")
    else:
        taken = db.execute(
            sa.select(Plan.id).where(Plan.slug == plan.slug, Plan.id != plan.id if plan.id else sa.true())
        ).first()
        if taken:
            errors.setdefault("slug", []).append("has already been taken")
    if plan.interval not in PLAN_INTERVALS:
        errors.setdefault("interval", []).append("is not included in the list")
    if plan.price_cents is None or plan.price_cents < 0:
        errors.setdefault("price_cents", []).append("must be greater than or equal to 0")
    if not plan.currency or not CURRENCY_RE.match(plan.currency):
        errors.setdefault("currency", []).append("must be a 3-letter lowercase code")

    for metric, config in (plan.limits or {}).items():
        if not isinstance(config, dict):
            errors.setdefault("limits", []).append(f"{metric} must be an object")
            continue
        limit = config.get("limit")
        if limit is not None and (not isinstance(limit, int) or isinstance(limit, bool) or limit < 0):
            errors.setdefault("limits", []).append(f"{metric} limit must be a non-negative integer")
        period = config.get("period")
        if period is not None and period not in LIMIT_PERIODS:
            errors.setdefault("limits", []).append(f"{metric} period must be one of {', '.join(LIMIT_PERIODS)}")

    if errors:
        raise DomainValidationError(errors)


def list_plans(db: Session, *, active_only: bool = False) -> list[Plan]:
    query = sa.select(Plan).order_by(Plan.price_cents.asc(), Plan.name.asc())
    if active_only:
        query = query.where(Plan.active.is_(True))
    return list(db.execute(query).scalars())


def get_plan(db: Session, plan_id: str | UUID) -> Plan:
    try:
        key = plan_id if isinstance(plan_id, UUID) else UUID(str(plan_id))
    except ValueError:
        raise NotFoundError("Plan not found")
    plan = db.get(Plan, key)
    if plan is None:
        raise NotFoundError("Plan not found")
    return plan


def get_plan_by_slug(db: Session, slug: str) -> Plan:
    plan = db.execute(sa.select(Plan).where(Plan.slug == slug)).scalar_one_or_none()
    if plan is None:
        raise NotFoundError("Plan not found")
    return plan


def create_plan(db: Session, values: dict[str, Any]) -> Plan:
    plan = Plan(
        name=values.get("name"),
        slug=values.get("slug"),
        interval=values.get("interval") or "monthly",
        price_cents=values.get("price_cents", 0),
        currency=(values.get("currency") or "usd").lower(),
        features=dict(values.get("features") or {}),
        limits=dict(values.get("limits") or {}),
        metadata_=dict(values.get("metadata_") or {}),
        active=values.get("active", True),
    )
    validate_plan(db, plan)
    db.add(plan)
    db.flush()
    logger.info("Created plan %s", plan.slug)
    return plan


def update_plan(db: Session, plan: Plan, values: dict[str, Any]) -> Plan:
    for name in EDITABLE_FIELDS:
        if name not in values:
            continue
        value = values[name]
        if name in ("features", "limits", "metadata_"):
            value = dict(value or {})
        elif name == "currency" and value:
            value = value.lower()
        setattr(plan, name, value)
    validate_plan(db, plan)
    db.flush()
    return plan


def delete_plan(db: Session, plan: Plan) -> None:
    for model, label in ((Entitlement, "entitlements"), (PaymentRequest, "payment requests"), (UsageCounter, "usage counters")):
        in_use = db.execute(sa.select(model.id).where(model.plan_id == plan.id).limit(1)).first()
        if in_use:
            raise AdminActionError(f"Plan is referenced by {label}")
    db.delete(plan)
    db.flush()
    logger.info("Deleted plan %s", plan.slug)
