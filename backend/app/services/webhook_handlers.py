"""Stripe webhook event handlers.

Each handler inspects current state before changing anything, so a redelivered
or out-of-order event is a no-op instead of a second grant or revoke. Lookups
that find nothing are logged and ignored.
"""

from __future__ import annotations

import calendar
import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Callable
from uuid import UUID

import sqlalchemy as sa
from sqlalchemy.orm import Session

from app.core.security import now_utc
from app.models.entitlement import Entitlement
from app.models.payment_request import PaymentRequest
from app.services import entitlements as entitlement_service
from app.services import notifications
from app.services import payment_requests as payment_request_service
from app.services.owners import HasBillingMetadata, OwnerRef
from app.services.stripe_provider import CUSTOMER_ID_KEY, StripePaymentProvider

if TYPE_CHECKING:
    from app.services.runtime import EntitlementsRuntime

logger = logging.getLogger(__name__)

PROVIDER_KEY = StripePaymentProvider.provider_key

ACTIVE_SUBSCRIPTION_STATUSES = {"active", "trialing"}
GRACE_SUBSCRIPTION_STATUSES = {"past_due"}
ENDED_SUBSCRIPTION_STATUSES = {"canceled", "unpaid", "incomplete_expired"}
IGNORED_SUBSCRIPTION_STATUSES = {"incomplete", "paused"}
FALLBACK_REPLAY_WINDOW = timedelta(days=1)


def _object(event: dict) -> dict:
    return (event.get("data") or {}).get("object") or {}


def _ref(value: Any) -> str | None:
    """Stripe sends either an id string or an expanded object carrying ``id``."""
    if isinstance(value, dict):
        value = value.get("id")
    return str(value) if value else None


def _invoice_subscription_id(invoice: dict) -> str | None:
    subscription_id = _ref(invoice.get("subscription"))
    if subscription_id:
        return subscription_id
    details = ((invoice.get("parent") or {}).get("subscription_details")) or {}
    return _ref(details.get("subscription"))


def _invoice_period_end(invoice: dict) -> datetime | None:
    lines = ((invoice.get("lines") or {}).get("data")) or []
    if not lines:
        return None
    period_end = ((lines[0] or {}).get("period") or {}).get("end")
    if not period_end:
        return None
    return datetime.fromtimestamp(int(period_end), tz=timezone.utc)


def _one_month_from(moment: datetime) -> datetime:
    year, month = (moment.year + 1, 1) if moment.month == 12 else (moment.year, moment.month + 1)
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


# lookups


def find_payment_request_by_session(db: Session, session: dict) -> PaymentRequest | None:
    session_id = _ref(session.get("id"))
    if session_id:
        found = payment_request_service.find_by_provider_ref(db, PROVIDER_KEY, session_id, for_update=True)
        if found is not None:
            return found

    request_id = (session.get("metadata") or {}).get("payment_request_id")
    if not request_id:
        return None
    try:
        key = UUID(str(request_id))
    except ValueError:
        return None
    return db.execute(
        sa.select(PaymentRequest)
        .where(PaymentRequest.id == key, PaymentRequest.provider_key == PROVIDER_KEY)
        .with_for_update()
    ).scalar_one_or_none()


def find_payment_request_by_subscription(db: Session, subscription_id: str) -> PaymentRequest | None:
    return payment_request_service.find_by_provider_ref(db, PROVIDER_KEY, subscription_id)


def find_entitlement_by_subscription(db: Session, subscription_id: str) -> Entitlement | None:
    entitlement = entitlement_service.find_by_provider_ref(db, subscription_id)
    if entitlement is not None:
        return entitlement
    request = find_payment_request_by_subscription(db, subscription_id)
    return request.entitlement if request else None


def find_payment_request_by_payment_intent(db: Session, payment_intent_id: str) -> PaymentRequest | None:
    # provider_data is an opaque JSON map; compare in Python to stay backend-neutral.
    candidates = db.execute(
        sa.select(PaymentRequest)
        .where(PaymentRequest.provider_key == PROVIDER_KEY)
        .order_by(PaymentRequest.created_at.desc())
    ).scalars()
    for request in candidates:
        if (request.provider_data or {}).get("payment_intent_id") == payment_intent_id:
            return request
    return None


def store_customer_id(db: Session, runtime: "EntitlementsRuntime", owner: OwnerRef, customer_id: str | None) -> None:
    """Remember the Stripe customer on the owner for later checkouts. Best effort."""
    if not customer_id:
        return
    try:
        entity = runtime.owners.load(db, owner)
        if not isinstance(entity, HasBillingMetadata):
            logger.info("Owner %s cannot store billing metadata, skipping customer id", owner)
            return
        metadata = dict(entity.billing_metadata or {})
        metadata[CUSTOMER_ID_KEY] = customer_id
        entity.billing_metadata = metadata
    except Exception as exc:
        logger.warning("Failed to store Stripe customer id for %s: %s", owner, exc)


def revoke_entitlement(db: Session, runtime: "EntitlementsRuntime", entitlement: Entitlement, reason: str) -> bool:
    return entitlement_service.revoke_entitlement_record(db, runtime, entitlement, reason)


# handlers


def handle_checkout_session_completed(db: Session, runtime: "EntitlementsRuntime", event: dict) -> None:
    session = _object(event)
    session_id = _ref(session.get("id"))

    request = find_payment_request_by_session(db, session)
    if request is None:
        logger.warning("No PaymentRequest found for checkout session %s", session_id)
        return
    if not request.is_actionable:
        logger.info("PaymentRequest %s already processed, skipping", request.id)
        return

    data = dict(request.provider_data or {})
    customer_id = _ref(session.get("customer"))
    if customer_id:
        data["customer_id"] = customer_id
    mode = data.get("mode") or session.get("mode")

    complete_params: dict[str, Any] = {}
    subscription_id = _ref(session.get("subscription"))
    payment_intent_id = _ref(session.get("payment_intent"))
    if mode == "subscription" and subscription_id:
        data["subscription_id"] = subscription_id
        complete_params["subscription_id"] = subscription_id
        request.provider_ref = subscription_id
    elif payment_intent_id:
        data["payment_intent_id"] = payment_intent_id
    request.provider_data = data
    db.flush()

    StripePaymentProvider(db, runtime, request).complete(complete_params)

    store_customer_id(
        db,
        runtime,
        OwnerRef.of(request.requestable_type, request.requestable_id),
        data.get("customer_id"),
    )
    logger.info("Granted entitlement for PaymentRequest %s", request.id)


def handle_invoice_paid(db: Session, runtime: "EntitlementsRuntime", event: dict) -> None:
    invoice = _object(event)
    subscription_id = _invoice_subscription_id(invoice)
    if not subscription_id:
        logger.debug("invoice.paid without subscription id, skipping")
        return

    entitlement = find_entitlement_by_subscription(db, subscription_id)
    if entitlement is None:
        logger.warning("No Entitlement found for subscription %s", subscription_id)
        return

    period_end = _invoice_period_end(invoice)
    if period_end is None:
        period_end = _one_month_from(now_utc())
        # a redelivered invoice without a line period keeps the date the first delivery set
        current = entitlement.expires_at
        if current is not None and current >= period_end - FALLBACK_REPLAY_WINDOW:
            period_end = current
    entitlement.expires_at = period_end
    status_changed = False
    if entitlement.status != "active":
        status_changed = entitlement_service.activate_entitlement(db, runtime, entitlement, allow_reactivation=True)

    request = find_payment_request_by_subscription(db, subscription_id)
    if request is not None and invoice.get("id"):
        payment_request_service.merge_provider_data(request, invoice_id=str(invoice["id"]))
    db.flush()

    if not status_changed:
        # the renewal itself is the change worth announcing
        notifications.enqueue(
            db, runtime.hooks.after_entitlement_changed, entitlement, entitlement.status, entitlement.status
        )
    logger.info("Extended entitlement for subscription %s to %s", subscription_id, period_end.isoformat())


def handle_invoice_payment_failed(db: Session, runtime: "EntitlementsRuntime", event: dict) -> None:
    invoice = _object(event)
    subscription_id = _invoice_subscription_id(invoice)
    if not subscription_id:
        logger.debug("invoice.payment_failed without subscription id, skipping")
        return

    request = find_payment_request_by_subscription(db, subscription_id)
    if request is None:
        logger.warning("No PaymentRequest found for subscription %s", subscription_id)
        return

    error = invoice.get("last_finalization_error") or {}
    payment_request_service.merge_provider_data(
        request,
        failure_code=error.get("code"),
        failure_message=error.get("message") or "Payment failed",
        invoice_id=str(invoice.get("id")) if invoice.get("id") else None,
    )
    db.flush()
    notifications.enqueue(db, runtime.hooks.after_payment_request_changed, request, request.status, request.status)
    logger.info("Recorded payment failure for subscription %s", subscription_id)


def handle_subscription_updated(db: Session, runtime: "EntitlementsRuntime", event: dict) -> None:
    subscription = _object(event)
    subscription_id = _ref(subscription.get("id"))
    status = str(subscription.get("status") or "")

    entitlement = find_entitlement_by_subscription(db, subscription_id) if subscription_id else None
    if entitlement is None:
        logger.warning("No Entitlement found for subscription %s", subscription_id)
        return

    if status in ACTIVE_SUBSCRIPTION_STATUSES:
        if entitlement_service.activate_entitlement(db, runtime, entitlement, allow_reactivation=True):
            logger.info("Activated entitlement for subscription %s", subscription_id)
    elif status in GRACE_SUBSCRIPTION_STATUSES:
        logger.info("Subscription %s is past_due, keeping entitlement", subscription_id)
    elif status in ENDED_SUBSCRIPTION_STATUSES:
        if revoke_entitlement(db, runtime, entitlement, "non_renewal"):
            logger.info("Revoked entitlement for subscription %s (status: %s)", subscription_id, status)
    elif status in IGNORED_SUBSCRIPTION_STATUSES:
        logger.debug("Subscription %s status %s, no action", subscription_id, status)
    else:
        logger.warning("Unknown subscription status: %s for %s", status, subscription_id)


def handle_subscription_deleted(db: Session, runtime: "EntitlementsRuntime", event: dict) -> None:
    subscription = _object(event)
    subscription_id = _ref(subscription.get("id"))

    entitlement = find_entitlement_by_subscription(db, subscription_id) if subscription_id else None
    if entitlement is None:
        logger.warning("No Entitlement found for subscription %s", subscription_id)
        return

    revoke_entitlement(db, runtime, entitlement, "non_renewal")

    request = find_payment_request_by_subscription(db, subscription_id)
    # refunded requests close out as expired too once the subscription is gone
    if request is not None and request.status != "expired":
        payment_request_service.set_status(db, runtime.hooks, request, "expired", expires_at=now_utc())
    db.flush()
    logger.info("Revoked entitlement and expired payment request for deleted subscription %s", subscription_id)


def handle_charge_refunded(db: Session, runtime: "EntitlementsRuntime", event: dict) -> None:
    charge = _object(event)
    payment_intent_id = _ref(charge.get("payment_intent"))
    if not payment_intent_id:
        logger.debug("charge.refunded without payment_intent, skipping")
        return

    request = find_payment_request_by_payment_intent(db, payment_intent_id)
    if request is None:
        logger.warning("No PaymentRequest found for payment_intent %s", payment_intent_id)
        return
    if request.entitlement is None:
        logger.warning("No Entitlement found for PaymentRequest %s", request.id)
        return

    if revoke_entitlement(db, runtime, request.entitlement, "refund"):
        logger.info("Revoked entitlement for refunded charge (payment_intent: %s)", payment_intent_id)
    db.flush()


Handler = Callable[[Session, "EntitlementsRuntime", dict], None]

HANDLERS: dict[str, Handler] = {
    "checkout.session.completed": handle_checkout_session_completed,
    "invoice.paid": handle_invoice_paid,
    "invoice.payment_failed": handle_invoice_payment_failed,
    "customer.subscription.updated": handle_subscription_updated,
    "customer.subscription.deleted": handle_subscription_deleted,
    "charge.refunded": handle_charge_refunded,
}


def handle_event(db: Session, runtime: "EntitlementsRuntime", event: dict) -> bool:
    """Dispatch ``event``. Returns False for event types nobody handles."""
    event_type = event.get("type")
    handler = HANDLERS.get(event_type)
    if handler is None:
        logger.debug("Ignoring unhandled event type: %s", event_type)
        return False
    handler(db, runtime, event)
    return True
