from uuid import uuid4

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.security import now_utc
from app.db.base import Base
from app.db.types import UTCDateTime

PAYMENT_REQUEST_STATUSES = ("pending", "processing", "approved", "rejected", "expired", "refunded")
ACTIONABLE_STATUSES = ("pending", "processing")


class PaymentRequest(Base):
    __tablename__ = "payment_requests"

    id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, primary_key=True, default=uuid4)
    requestable_type: Mapped[str] = mapped_column(sa.Text, nullable=False)
    requestable_id: Mapped[str] = mapped_column(sa.Text, nullable=False)
    plan_id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, sa.ForeignKey("plans.id", ondelete="RESTRICT"), nullable=False)
    provider_key: Mapped[str] = mapped_column(sa.Text, nullable=False)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False, default="pending")
    amount_cents: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(sa.Text, nullable=False, default="usd")
    provider_ref: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    provider_data: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)
    entitlement_id: Mapped[sa.Uuid | None] = mapped_column(
        sa.Uuid, sa.ForeignKey("entitlements.id", ondelete="SET NULL"), nullable=True
    )
    resolved_by: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    resolved_at: Mapped[sa.DateTime | None] = mapped_column(UTCDateTime, nullable=True)
    admin_note: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    expires_at: Mapped[sa.DateTime | None] = mapped_column(UTCDateTime, nullable=True)
    metadata_: Mapped[dict] = mapped_column("metadata", sa.JSON, nullable=False, default=dict)
    created_at: Mapped[sa.DateTime] = mapped_column(UTCDateTime, nullable=False, default=now_utc)
    updated_at: Mapped[sa.DateTime] = mapped_column(UTCDateTime, nullable=False, default=now_utc, onupdate=now_utc)

    plan = relationship("Plan", lazy="joined")
    entitlement = relationship("Entitlement")

    __table_args__ = (
        sa.CheckConstraint(
            "status IN ('pending','processing','approved','rejected','expired','refunded')",
            name="ck_payment_requests_status",
        ),
        sa.CheckConstraint("amount_cents >= 0", name="ck_payment_requests_amount_cents"),
        sa.Index(
            "uq_payment_requests_actionable_requestable_plan",
            "requestable_type",
            "requestable_id",
            "plan_id",
            unique=True,
            postgresql_where=sa.text("status IN ('pending','processing')"),
            sqlite_where=sa.text("status IN ('pending','processing')"),
        ),
        sa.Index("ix_payment_requests_provider_ref", "provider_key", "provider_ref"),
        sa.Index("ix_payment_requests_status_created", "status", sa.text("created_at DESC")),
        sa.Index("ix_payment_requests_requestable", "requestable_type", "requestable_id"),
    )

    @property
    def is_actionable(self) -> bool:
        return self.status in ACTIONABLE_STATUSES
