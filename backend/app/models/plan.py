from uuid import uuid4

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from app.core.security import now_utc
from app.db.base import Base
from app.db.types import UTCDateTime

PLAN_INTERVALS = ("monthly", "yearly", "lifetime", "one_time")
LIMIT_PERIODS = ("daily", "weekly", "monthly")


class Plan(Base):
    __tablename__ = "plans"

    id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    slug: Mapped[str] = mapped_column(sa.Text, nullable=False, unique=True)
    interval: Mapped[str] = mapped_column(sa.Text, nullable=False, default="monthly")
    price_cents: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(sa.Text, nullable=False, default="usd")
    features: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)
    limits: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)
    metadata_: Mapped[dict] = mapped_column("metadata", sa.JSON, nullable=False, default=dict)
    active: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=True)
    created_at: Mapped[sa.DateTime] = mapped_column(UTCDateTime, nullable=False, default=now_utc)
    updated_at: Mapped[sa.DateTime] = mapped_column(UTCDateTime, nullable=False, default=now_utc, onupdate=now_utc)

    __table_args__ = (
        sa.CheckConstraint("interval IN ('monthly','yearly','lifetime','one_time')", name="ck_plans_interval"),
        sa.CheckConstraint("price_cents >= 0", name="ck_plans_price_cents"),
        sa.Index("ix_plans_active", "active"),
    )

    @property
    def is_free(self) -> bool:
        return self.price_cents == 0

    def has_feature(self, key: str) -> bool:
        return (self.features or {}).get(str(key)) is True

    def limit_config_for(self, metric: str) -> dict | None:
        config = (self.limits or {}).get(str(metric))
        return config if isinstance(config, dict) else None

    def limit_for(self, metric: str) -> int | None:
        config = self.limit_config_for(metric)
        return config.get("limit") if config else None

    def period_for(self, metric: str) -> str | None:
        config = self.limit_config_for(metric)
        return config.get("period") if config else None
