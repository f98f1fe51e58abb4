from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


PlanInterval = Literal["monthly", "yearly", "lifetime", "one_time"]
LimitPeriod = Literal["daily", "weekly", "monthly"]


class PlanLimitIn(BaseModel):
    limit: int | None = Field(default=None, ge=0)
    period: LimitPeriod | None = None


class PlanCreateIn(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    slug: str = Field(min_length=1, max_length=64)
    interval: PlanInterval = "monthly"
    price_cents: int = Field(default=0, ge=0)
    currency: str = Field(default="usd", min_length=3, max_length=3)
    features: dict[str, bool] = Field(default_factory=dict)
    limits: dict[str, PlanLimitIn] = Field(default_factory=dict)
    metadata: dict = Field(default_factory=dict)
    active: bool = True


class PlanUpdateIn(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=120)
    slug: str | None = Field(default=None, min_length=1, max_length=64)
    interval: PlanInterval | None = None
    price_cents: int | None = Field(default=None, ge=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    features: dict[str, bool] | None = None
    limits: dict[str, PlanLimitIn] | None = None
    metadata: dict | None = None
    active: bool | None = None


class PlanOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    slug: str
    interval: PlanInterval
    price_cents: int
    currency: str
    features: dict = Field(default_factory=dict)
    limits: dict = Field(default_factory=dict)
    metadata: dict = Field(default_factory=dict, validation_alias=AliasChoices("metadata_", "metadata"))
    active: bool
    created_at: datetime
    updated_at: datetime
