import json
import logging

import stripe
from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session

from app.api.deps import get_runtime
from app.core.config import settings
from app.db.session import get_db
from app.services.provider_registry import provider_setting_key
from app.services.runtime import EntitlementsRuntime
from app.services.webhook_handlers import handle_event

logger = logging.getLogger(__name__)

router = APIRouter()

SIGNATURE_HEADER = "Stripe-Signature"


def _verify_and_parse(raw: bytes, signature: str, secret: str) -> dict | None:
    payload = raw.decode("utf-8", errors="replace")
    if not settings.STRIPE_WEBHOOK_SKIP_VERIFICATION:
        try:
            stripe.WebhookSignature.verify_header(
                payload, signature, secret, tolerance=settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS
            )
        except stripe.SignatureVerificationError:
            return None
    try:
        event = json.loads(payload)
    except ValueError:
        return None
    return event if isinstance(event, dict) else None


@router.post("/stripe/webhooks", response_class=PlainTextResponse)
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    runtime: EntitlementsRuntime = Depends(get_runtime),
):
    raw = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)
    if not signature:
        return PlainTextResponse("Missing signature", status_code=400)

    secret = runtime.settings.get(provider_setting_key("stripe", "webhook_secret")) or ""
    event = _verify_and_parse(raw, signature, secret)
    if event is None:
        return PlainTextResponse("Invalid signature", status_code=400)

    event_type = event.get("type")
    logger.info("Stripe webhook received: %s (%s)", event_type, event.get("id"))
    try:
        handle_event(db, runtime, event)
        db.commit()
    except Exception as exc:
        db.rollback()
        logger.error(
            "Stripe webhook processing failed for %s: %s",
            event_type,
            exc,
            exc_info=True,
            extra={"event_type": event_type},
        )
        return PlainTextResponse(f"Processing error: {exc}", status_code=422)
    return PlainTextResponse("OK", status_code=200)
