from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy.orm import Session

from app.core.errors import DomainValidationError, ProviderOperationNotSupported
from app.core.security import now_utc
from app.models.payment_request import PaymentRequest
from app.services import entitlements as entitlement_service
from app.services import payment_requests as payment_request_service
from app.services.owners import OwnerRef
from app.services.settings_resolver import SettingDefinition

if TYPE_CHECKING:
    from app.services.runtime import EntitlementsRuntime


def checkout_mode(interval: str | None) -> str:
    if interval in ("monthly", "yearly"):
        return "subscription"
    return "payment"


def format_amount(cents: int, currency: str) -> str:
    code = (currency or "").upper()
    symbol = "$" if code == "USD" else code
    return f"{symbol}{cents / 100:.2f}"


class PaymentProvider:
    """Base class for payment providers.

    A provider instance is bound to one PaymentRequest. Subclasses declare their
    capabilities and settings as class attributes and implement ``initiate``,
    ``complete`` and ``reject``. ``refund`` is optional.
    """

    provider_key: str = ""
    provider_label: str = ""
    manual_resolution: bool = False
    admin_actions: tuple[str, ...] = ()
    refundable: bool = False
    required_settings: tuple[str, ...] = ()
    settings_schema: tuple[SettingDefinition, ...] = ()

    def __init__(self, db: Session, runtime: "EntitlementsRuntime", payment_request: PaymentRequest):
        self.db = db
        self.runtime = runtime
        self.payment_request = payment_request

    def initiate(self) -> dict[str, Any]:
        raise NotImplementedError

    def complete(self, params: dict[str, Any] | None = None) -> None:
        raise NotImplementedError

    def reject(self, params: dict[str, Any] | None = None) -> None:
        raise NotImplementedError

    def refund(self, params: dict[str, Any] | None = None) -> None:
        raise ProviderOperationNotSupported(f"Provider :{self.provider_key} does not support refunds")

    def admin_details(self) -> dict[str, str]:
        return {}

    def setting(self, name: str) -> Any:
        return self.runtime.settings.get(f"entitlements.providers.{self.provider_key}.{name}")

    @property
    def requestable(self) -> OwnerRef:
        return OwnerRef.of(self.payment_request.requestable_type, self.payment_request.requestable_id)

    def _grant_and_approve(self, subscription_id: str | None = None) -> None:
        request = self.payment_request
        entitlement = entitlement_service.grant_entitlement(
            self.db,
            self.runtime,
            self.requestable,
            plan=request.plan,
            provider=request.provider_key,
            metadata=dict(request.metadata_ or {}),
        )
        if subscription_id:
            entitlement.provider_ref = subscription_id
        payment_request_service.set_status(
            self.db,
            self.runtime.hooks,
            request,
            "approved",
            entitlement=entitlement,
        )
        self.db.flush()


class WirePaymentProvider(PaymentProvider):
    """Manual bank transfer: instructions go out, an admin approves or rejects."""

    provider_key = "wire"
    provider_label = "Wire Transfer"
    manual_resolution = True
    admin_actions = ("approve", "reject")
    refundable = False
    settings_schema = (
        SettingDefinition(
            "instructions",
            "string",
            "",
            "Custom instructions template (supports %(amount)s, %(currency)s, %(bank_name)s, "
            "%(account_number)s, %(routing_number)s)",
        ),
        SettingDefinition("bank_name", "string", "", "Bank name for wire transfer details"),
        SettingDefinition("account_number", "string", "", "Account number for wire transfer"),
        SettingDefinition("routing_number", "string", "", "Routing number for wire transfer"),
        SettingDefinition("auto_expire_hours", "integer", 72, "Hours before wire transfer requests auto-expire"),
    )

    def initiate(self) -> dict[str, Any]:
        request = self.payment_request
        bank_name = self.setting("bank_name") or ""
        account_number = self.setting("account_number") or ""
        routing_number = self.setting("routing_number") or ""
        expire_hours = int(self.setting("auto_expire_hours") or 0)
        now = now_utc()

        payment_request_service.set_status(
            self.db,
            self.runtime.hooks,
            request,
            "processing",
            expires_at=now + timedelta(hours=expire_hours),
            provider_data={
                "bank_name": bank_name,
                "account_number": account_number,
                "routing_number": routing_number,
                "instructions_sent_at": now.isoformat(),
            },
        )
        self.db.flush()

        instructions = self._build_instructions(
            self.setting("instructions") or "",
            amount=format_amount(request.amount_cents, request.currency),
            currency=request.currency,
            bank_name=bank_name,
            account_number=account_number,
            routing_number=routing_number,
        )
        return {"instructions": instructions}

    def complete(self, params: dict[str, Any] | None = None) -> None:
        if not self.payment_request.is_actionable:
            return
        self._grant_and_approve()

    def reject(self, params: dict[str, Any] | None = None) -> None:
        if not self.payment_request.is_actionable:
            return
        payment_request_service.set_status(self.db, self.runtime.hooks, self.payment_request, "rejected")
        self.db.flush()

    def admin_details(self) -> dict[str, str]:
        data = self.payment_request.provider_data or {}
        labels = (
            ("Bank Name", "bank_name"),
            ("Account Number", "account_number"),
            ("Routing Number", "routing_number"),
            ("Instructions Sent At", "instructions_sent_at"),
        )
        return {label: str(data[key]) for label, key in labels if data.get(key)}

    @staticmethod
    def _build_instructions(template: str, **values: str) -> str:
        if template:
            try:
                return template % values
            except (KeyError, TypeError, ValueError) as exc:
                raise DomainValidationError({"instructions": [f"is not a valid template ({exc})"]}) from exc
        parts = [f"Please wire {values['amount']} to"]
        if values.get("bank_name"):
            parts.append(values["bank_name"])
        if values.get("account_number"):
            parts.append(f"(Account: {values['account_number']})")
        if values.get("routing_number"):
            parts.append(f"(Routing: {values['routing_number']})")
        return " ".join(parts)
