from uuid import uuid4

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.security import now_utc
from app.db.base import Base
from app.db.types import UTCDateTime

ENTITLEMENT_STATUSES = ("pending", "active", "expired", "revoked")
REVOKE_REASONS = ("refund", "admin", "chargeback", "non_renewal", "upgrade")


class Entitlement(Base):
    __tablename__ = "entitlements"

    id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, primary_key=True, default=uuid4)
    entitleable_type: Mapped[str] = mapped_column(sa.Text, nullable=False)
    entitleable_id: Mapped[str] = mapped_column(sa.Text, nullable=False)
    plan_id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, sa.ForeignKey("plans.id", ondelete="RESTRICT"), nullable=False)
    provider: Mapped[str] = mapped_column(sa.Text, nullable=False)
    provider_ref: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False, default="pending")
    activated_at: Mapped[sa.DateTime | None] = mapped_column(UTCDateTime, nullable=True)
    expires_at: Mapped[sa.DateTime | None] = mapped_column(UTCDateTime, nullable=True)
    revoked_at: Mapped[sa.DateTime | None] = mapped_column(UTCDateTime, nullable=True)
    revoke_reason: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    metadata_: Mapped[dict] = mapped_column("metadata", sa.JSON, nullable=False, default=dict)
    created_at: Mapped[sa.DateTime] = mapped_column(UTCDateTime, nullable=False, default=now_utc)
    updated_at: Mapped[sa.DateTime] = mapped_column(UTCDateTime, nullable=False, default=now_utc, onupdate=now_utc)

    plan = relationship("Plan", lazy="joined")

    __table_args__ = (
        sa.CheckConstraint("status IN ('pending','active','expired','revoked')", name="ck_entitlements_status"),
        sa.CheckConstraint(
            "revoke_reason IS NULL OR revoke_reason IN ('refund','admin','chargeback','non_renewal','upgrade')",
            name="ck_entitlements_revoke_reason",
        ),
        sa.CheckConstraint(
            "(status = 'revoked' AND revoke_reason IS NOT NULL) OR (status <> 'revoked' AND revoke_reason IS NULL)",
            name="ck_entitlements_revoke_reason_status",
        ),
        sa.Index("ix_entitlements_entitleable_status", "entitleable_type", "entitleable_id", "status"),
        sa.Index("ix_entitlements_provider_ref", "provider_ref"),
        sa.Index("ix_entitlements_status_expires", "status", "expires_at"),
    )

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    @property
    def is_revoked(self) -> bool:
        return self.status == "revoked"
