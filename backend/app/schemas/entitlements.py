from datetime import datetime
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from app.schemas.plans import PlanOut


class EntitlementOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    entitleable_type: str
    entitleable_id: str
    plan_id: UUID
    provider: str
    provider_ref: str | None = None
    status: str
    activated_at: datetime | None = None
    expires_at: datetime | None = None
    revoked_at: datetime | None = None
    revoke_reason: str | None = None
    metadata: dict = Field(default_factory=dict, validation_alias=AliasChoices("metadata_", "metadata"))
    created_at: datetime


class UsageMetricOut(BaseModel):
    metric: str
    period: str | None = None
    limit: int | None = None
    remaining: int | None = None
    within_limit: bool


class OwnerSummaryOut(BaseModel):
    owner_type: str
    owner_id: str
    plan: PlanOut | None = None
    entitlement: EntitlementOut | None = None
    features: dict[str, bool] = Field(default_factory=dict)
    usage: list[UsageMetricOut] = Field(default_factory=list)
    pending_payment_request_ids: list[UUID] = Field(default_factory=list)


class UsageIncrementIn(BaseModel):
    metric: str = Field(min_length=1, max_length=120)
    by: int = Field(default=1, ge=0, le=1_000_000)


class UsageIncrementOut(BaseModel):
    metric: str
    current_value: int
    limit: int | None = None
    remaining: int | None = None
    within_limit: bool


class UsageHistoryRowOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    period_key: str
    current_value: int
    limit: int | None = None


class PaymentRequestCreateIn(BaseModel):
    plan_slug: str = Field(min_length=1, max_length=64)
    provider: str = Field(min_length=1, max_length=64)
    amount_cents: int | None = Field(default=None, ge=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    metadata: dict = Field(default_factory=dict)


class PaymentRequestCreateOut(BaseModel):
    payment_request_id: UUID | None = None
    status: str
    redirect_url: str | None = None
    instructions: str | None = None
    error: str | None = None


class EntitlementRevokeIn(BaseModel):
    reason: str = "admin"
