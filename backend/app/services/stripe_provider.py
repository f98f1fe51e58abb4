from __future__ import annotations

import logging
from typing import Any

import stripe

from app.core.errors import MissingIntegrationDataError
from app.services import entitlements as entitlement_service
from app.services import payment_requests as payment_request_service
from app.services.owners import billing_email_of, billing_metadata_of
from app.services.payment_provider import PaymentProvider, checkout_mode
from app.services.settings_resolver import SettingDefinition

logger = logging.getLogger(__name__)

CUSTOMER_ID_KEY = "stripe_customer_id"
PRICE_ID_KEY = "stripe_price_id"


def _get_stripe(secret_key: str | None) -> Any:
    """Configure and return the Stripe SDK module."""
    stripe.api_key = secret_key or None
    stripe.max_network_retries = 0
    return stripe


class StripePaymentProvider(PaymentProvider):
    """Stripe Checkout for one-off payments and subscriptions.

    Approval is driven by webhooks (see ``webhook_handlers``), never by an
    admin; the only admin action is a refund.
    """

    provider_key = "stripe"
    provider_label = "Stripe"
    manual_resolution = False
    admin_actions = ("refund",)
    refundable = True
    settings_schema = (
        SettingDefinition("enabled", "boolean", False, "Enable Stripe payment provider"),
        SettingDefinition(
            "secret_key", "string", "", "Stripe secret API key (sk_live_... or sk_test_...)", encrypted=True
        ),
        SettingDefinition("publishable_key", "string", "", "Stripe publishable key (pk_live_... or pk_test_...)"),
        SettingDefinition("webhook_secret", "string", "", "Webhook endpoint signing secret (whsec_...)", encrypted=True),
        SettingDefinition(
            "success_url",
            "string",
            "",
            "Redirect after a successful checkout (supports {CHECKOUT_SESSION_ID})",
        ),
        SettingDefinition("cancel_url", "string", "", "Redirect when the customer cancels checkout"),
    )

    def client(self) -> Any:
        return _get_stripe(self.setting("secret_key"))

    def initiate(self) -> dict[str, Any]:
        request = self.payment_request
        plan = request.plan
        price_id = (plan.metadata_ or {}).get(PRICE_ID_KEY)
        if not price_id:
            raise MissingIntegrationDataError(
                f"Plan '{plan.slug}' has no {PRICE_ID_KEY} in metadata. "
                f"Set plan metadata['{PRICE_ID_KEY}'] to a valid Stripe Price ID."
            )

        mode = checkout_mode(plan.interval)
        session = self.client().checkout.Session.create(**self._session_params(mode, price_id))

        data = dict(request.provider_data or {})
        data.update({"checkout_session_id": session.id, "mode": mode})
        payment_request_service.set_status(
            self.db,
            self.runtime.hooks,
            request,
            "processing",
            provider_ref=session.id,
            provider_data=data,
        )
        self.db.flush()
        logger.info("Created Stripe checkout session %s for payment request %s", session.id, request.id)
        return {"redirect_url": session.url}

    def complete(self, params: dict[str, Any] | None = None) -> None:
        if not self.payment_request.is_actionable:
            return
        self._grant_and_approve(subscription_id=(params or {}).get("subscription_id"))

    def reject(self, params: dict[str, Any] | None = None) -> None:
        # Failed payments arrive as invoice.payment_failed events.
        return None

    def refund(self, params: dict[str, Any] | None = None) -> None:
        request = self.payment_request
        data = dict(request.provider_data or {})
        client = self.client()

        subscription_id = data.get("subscription_id")
        if subscription_id:
            try:
                client.Subscription.cancel(subscription_id)
            except stripe.InvalidRequestError as exc:
                logger.warning("Stripe subscription %s cancel failed: %s", subscription_id, exc)

        payment_intent_id = data.get("payment_intent_id")
        if payment_intent_id:
            refund = client.Refund.create(payment_intent=payment_intent_id)
            data["refund_id"] = refund.id

        if request.entitlement is not None:
            entitlement_service.revoke_entitlement_record(self.db, self.runtime, request.entitlement, "refund")

        payment_request_service.set_status(self.db, self.runtime.hooks, request, "refunded", provider_data=data)
        self.db.flush()

    def admin_details(self) -> dict[str, str]:
        data = self.payment_request.provider_data or {}
        details: dict[str, str] = {}
        if data.get("mode"):
            details["Mode"] = str(data["mode"]).capitalize()
        labels = (
            ("Checkout Session", "checkout_session_id"),
            ("Stripe Customer", "customer_id"),
            ("Subscription", "subscription_id"),
            ("Payment Intent", "payment_intent_id"),
            ("Invoice", "invoice_id"),
            ("Refund", "refund_id"),
            ("Failure", "failure_message"),
        )
        for label, key in labels:
            if data.get(key):
                details[label] = str(data[key])
        return details

    def _session_params(self, mode: str, price_id: str) -> dict[str, Any]:
        request = self.payment_request
        plan = request.plan
        params: dict[str, Any] = {
            "mode": mode,
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": self.setting("success_url"),
            "cancel_url": self.setting("cancel_url"),
            "metadata": {
                "payment_request_id": str(request.id),
                "plan_id": str(plan.id),
                "requestable_type": request.requestable_type,
                "requestable_id": str(request.requestable_id),
            },
        }
        if mode == "subscription":
            params["subscription_data"] = {
                "metadata": {
                    "plan_id": str(plan.id),
                    "requestable_type": request.requestable_type,
                    "requestable_id": str(request.requestable_id),
                }
            }

        owner = self.runtime.owners.load(self.db, self.requestable)
        customer_id = billing_metadata_of(owner).get(CUSTOMER_ID_KEY)
        if customer_id:
            params["customer"] = customer_id
        else:
            email = billing_email_of(owner)
            if email:
                params["customer_email"] = email
        return params
