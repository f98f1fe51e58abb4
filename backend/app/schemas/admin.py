from datetime import datetime
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class PaymentRequestOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    requestable_type: str
    requestable_id: str
    plan_id: UUID
    provider_key: str
    status: str
    amount_cents: int
    currency: str
    provider_ref: str | None = None
    entitlement_id: UUID | None = None
    resolved_by: str | None = None
    resolved_at: datetime | None = None
    admin_note: str | None = None
    expires_at: datetime | None = None
    metadata: dict = Field(default_factory=dict, validation_alias=AliasChoices("metadata_", "metadata"))
    created_at: datetime


class PaymentRequestDetailOut(PaymentRequestOut):
    provider_data: dict = Field(default_factory=dict)
    provider_label: str | None = None
    admin_actions: list[str] = Field(default_factory=list)
    refundable: bool = False
    admin_details: dict[str, str] = Field(default_factory=dict)


class PaymentRequestListOut(BaseModel):
    items: list[PaymentRequestOut] = Field(default_factory=list)
    total: int
    page: int
    per_page: int


class PaymentRequestRejectIn(BaseModel):
    admin_note: str | None = Field(default=None, max_length=2000)


class UsageCounterOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    countable_type: str
    countable_id: str
    metric: str
    period_key: str
    plan_id: UUID
    current_value: int
    limit: int | None = None
    created_at: datetime


class UsageCounterListOut(BaseModel):
    items: list[UsageCounterOut] = Field(default_factory=list)
    total: int
    page: int
    per_page: int
    available_metrics: list[str] = Field(default_factory=list)
    available_types: list[str] = Field(default_factory=list)


class UsageTrendPointOut(BaseModel):
    period_key: str
    total: int


class UsageTrendOut(BaseModel):
    metric: str
    points: list[UsageTrendPointOut] = Field(default_factory=list)


class ProviderOut(BaseModel):
    key: str
    label: str
    enabled: bool
    manual_resolution: bool
    admin_actions: list[str] = Field(default_factory=list)
    refundable: bool
