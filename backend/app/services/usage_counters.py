from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from app.core.errors import UsageError
from app.core.hooks import LifecycleHooks
from app.models.entitlement import Entitlement
from app.models.plan import Plan
from app.models.usage_counter import UsageCounter
from app.services import notifications
from app.services.owners import OwnerRef
from app.services.period_key import CUMULATIVE_KEY, current_key

if TYPE_CHECKING:
    from app.services.runtime import EntitlementsRuntime

logger = logging.getLogger(__name__)

SORTABLE_COLUMNS = {"current_value", "period_key", "created_at"}

_BUCKET_COLUMNS = ("countable_type", "countable_id", "metric", "period_key", "plan_id")


def _insert_for(db: Session):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise NotImplementedError(f"Usage counters need ON CONFLICT support, unsupported dialect: {dialect}")


def counters_query(
    *,
    owner: OwnerRef | None = None,
    metric: str | None = None,
    period_key: str | None = None,
    plan_id=None,
    cumulative: bool = False,
    countable_type: str | None = None,
):
    query = sa.select(UsageCounter)
    if owner is not None:
        query = query.where(
            UsageCounter.countable_type == owner.owner_type,
            UsageCounter.countable_id == owner.owner_id,
        )
    if countable_type:
        query = query.where(UsageCounter.countable_type == countable_type)
    if metric:
        query = query.where(UsageCounter.metric == str(metric))
    if period_key:
        query = query.where(UsageCounter.period_key == str(period_key))
    if plan_id is not None:
        query = query.where(UsageCounter.plan_id == plan_id)
    if cumulative:
        query = query.where(UsageCounter.period_key == CUMULATIVE_KEY)
    return query


def find_counter(db: Session, owner: OwnerRef, metric: str, period_key: str, plan_id) -> UsageCounter | None:
    return db.execute(
        counters_query(owner=owner, metric=metric, period_key=period_key, plan_id=plan_id)
    ).scalar_one_or_none()


def recent_periods(db: Session, metric: str, n: int, *, owner: OwnerRef | None = None) -> list[UsageCounter]:
    return list(
        db.execute(
            counters_query(owner=owner, metric=metric).order_by(UsageCounter.period_key.desc()).limit(n)
        ).scalars()
    )


def find_or_create_counter(
    db: Session,
    owner: OwnerRef,
    *,
    metric: str,
    period_key: str,
    plan_id,
    limit: int | None,
) -> UsageCounter:
    """Return the bucket row, creating it if needed.

    Concurrent creators race on the unique bucket key; the loser's insert is a
    no-op and both read the same row.
    """
    existing = find_counter(db, owner, metric, period_key, plan_id)
    if existing is not None:
        return existing

    insert = _insert_for(db)
    stmt = insert(UsageCounter).values(
        countable_type=owner.owner_type,
        countable_id=owner.owner_id,
        metric=str(metric),
        period_key=period_key,
        plan_id=plan_id,
        current_value=0,
        limit=limit,
    )
    db.execute(stmt.on_conflict_do_nothing(index_elements=list(_BUCKET_COLUMNS)))
    return db.execute(
        counters_query(owner=owner, metric=metric, period_key=period_key, plan_id=plan_id)
    ).scalar_one()


def increment_counter(db: Session, hooks: LifecycleHooks, counter: UsageCounter, by: int = 1) -> int:
    """Atomically add ``by`` and return the new value.

    The usage-limit callback is queued only for the increment that moves the
    value from below the limit to at-or-above it.
    """
    if by < 0:
        raise UsageError("Increment amount must be zero or positive")

    row = db.execute(
        sa.update(UsageCounter)
        .where(UsageCounter.id == counter.id)
        .values(current_value=UsageCounter.current_value + by)
        .returning(UsageCounter.current_value, UsageCounter.limit)
        .execution_options(synchronize_session=False)
    ).one()
    new_value, limit = row
    set_committed_value(counter, "current_value", new_value)

    if limit is not None and new_value >= limit and new_value - by < limit:
        logger.info("Usage limit reached for %s on %s (%s/%s)", counter.metric, counter.countable_id, new_value, limit)
        notifications.enqueue(db, hooks.after_usage_limit_reached, counter)
    return new_value


def create_counters_for(db: Session, runtime: "EntitlementsRuntime", entitlement: Entitlement) -> list[UsageCounter]:
    if entitlement.status != "active":
        return []
    if not runtime.settings.get("entitlements.auto_create_counters"):
        return []

    plan = entitlement.plan
    owner = OwnerRef.of(entitlement.entitleable_type, entitlement.entitleable_id)
    created = []
    for metric, config in (plan.limits or {}).items():
        if not isinstance(config, dict):
            continue
        created.append(
            find_or_create_counter(
                db,
                owner,
                metric=metric,
                period_key=current_key(config.get("period")),
                plan_id=plan.id,
                limit=config.get("limit"),
            )
        )
    return created


def handle_plan_change(
    db: Session, runtime: "EntitlementsRuntime", owner: OwnerRef, *, old_plan: Plan, new_plan: Plan
) -> None:
    """Move usage onto the new plan's counters.

    Same period type under ``continue`` carries the current count over; any
    other case starts at zero. Counters of metrics the new plan drops stay as
    history.
    """
    mode = runtime.settings.get("entitlements.on_plan_change_usage") or "continue"

    for metric, new_config in (new_plan.limits or {}).items():
        if not isinstance(new_config, dict):
            continue
        new_period = new_config.get("period")
        old_config = old_plan.limit_config_for(metric)

        carry_over = 0
        if old_config is not None and old_config.get("period") == new_period and mode == "continue":
            old_counter = find_counter(db, owner, metric, current_key(new_period), old_plan.id)
            carry_over = old_counter.current_value if old_counter else 0

        counter = find_or_create_counter(
            db,
            owner,
            metric=metric,
            period_key=current_key(new_period),
            plan_id=new_plan.id,
            limit=new_config.get("limit"),
        )
        counter.current_value = carry_over
        counter.limit = new_config.get("limit")
    db.flush()


def list_usage_counters(
    db: Session,
    *,
    metric: str | None = None,
    period_key: str | None = None,
    countable_type: str | None = None,
    sort: str | None = None,
    direction: str | None = None,
    page: int = 1,
    per_page: int = 25,
) -> dict[str, Any]:
    query = counters_query(metric=metric, period_key=period_key, countable_type=countable_type)
    sort_col = getattr(UsageCounter, sort if sort in SORTABLE_COLUMNS else "created_at")
    order = sort_col.asc() if direction == "asc" else sort_col.desc()

    total = db.execute(sa.select(sa.func.count()).select_from(query.subquery())).scalar_one()
    page = max(int(page or 1), 1)
    rows = db.execute(query.order_by(order).offset((page - 1) * per_page).limit(per_page)).scalars().all()

    metrics = db.execute(sa.select(UsageCounter.metric).distinct().order_by(UsageCounter.metric)).scalars().all()
    types = (
        db.execute(sa.select(UsageCounter.countable_type).distinct().order_by(UsageCounter.countable_type))
        .scalars()
        .all()
    )
    return {
        "items": rows,
        "total": total,
        "page": page,
        "per_page": per_page,
        "available_metrics": list(metrics),
        "available_types": list(types),
    }


def usage_trend(
    db: Session,
    metric: str,
    *,
    countable_type: str | None = None,
    countable_id: str | None = None,
    buckets: int = 30,
) -> list[tuple[str, int]]:
    """Sum of ``current_value`` per period key, oldest first, last ``buckets`` periods."""
    query = (
        sa.select(UsageCounter.period_key, sa.func.sum(UsageCounter.current_value))
        .where(UsageCounter.metric == metric)
        .group_by(UsageCounter.period_key)
        .order_by(UsageCounter.period_key.desc())
        .limit(buckets)
    )
    if countable_type:
        query = query.where(UsageCounter.countable_type == countable_type)
    if countable_id:
        query = query.where(UsageCounter.countable_id == str(countable_id))
    rows = db.execute(query).all()
    return [(period_key, int(total or 0)) for period_key, total in reversed(rows)]
