from uuid import uuid4

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from app.core.security import now_utc
from app.db.base import Base
from app.db.types import UTCDateTime


class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    billing_email: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    billing_metadata: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False, default="active")
    created_at: Mapped[sa.DateTime] = mapped_column(UTCDateTime, nullable=False, default=now_utc)

    __table_args__ = (
        sa.CheckConstraint("status in ('active','blocked','deleted')", name="ck_accounts_status"),
    )
