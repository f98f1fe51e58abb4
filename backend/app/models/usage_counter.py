from uuid import uuid4

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from app.core.security import now_utc
from app.db.base import Base
from app.db.types import UTCDateTime


class UsageCounter(Base):
    __tablename__ = "usage_counters"

    id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, primary_key=True, default=uuid4)
    countable_type: Mapped[str] = mapped_column(sa.Text, nullable=False)
    countable_id: Mapped[str] = mapped_column(sa.Text, nullable=False)
    metric: Mapped[str] = mapped_column(sa.Text, nullable=False)
    period_key: Mapped[str] = mapped_column(sa.Text, nullable=False)
    plan_id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, sa.ForeignKey("plans.id", ondelete="RESTRICT"), nullable=False)
    current_value: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    limit: Mapped[int | None] = mapped_column(sa.Integer, nullable=True)
    created_at: Mapped[sa.DateTime] = mapped_column(UTCDateTime, nullable=False, default=now_utc)
    updated_at: Mapped[sa.DateTime] = mapped_column(UTCDateTime, nullable=False, default=now_utc, onupdate=now_utc)

    __table_args__ = (
        sa.CheckConstraint("current_value >= 0", name="ck_usage_counters_current_value"),
        sa.UniqueConstraint(
            "countable_type",
            "countable_id",
            "metric",
            "period_key",
            "plan_id",
            name="uq_usage_counters_bucket",
        ),
        sa.Index("ix_usage_counters_metric_period", "metric", sa.text("period_key DESC")),
    )

    @property
    def at_limit(self) -> bool:
        if self.limit is None:
            return False
        return self.current_value >= self.limit

    @property
    def remaining(self) -> int | None:
        if self.limit is None:
            return None
        return max(self.limit - self.current_value, 0)
