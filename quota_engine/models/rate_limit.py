"""SQLAlchemy model for per-model request counters."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from ..core.windows import naive_utcnow
from ..db.session import Base


class RateLimitCounterModel(Base):
    """Tracks daily and per-minute request counts per account/resource."""

    __tablename__ = "rate_limit_counters"
    __table_args__ = (
        UniqueConstraint("account_id", "resource_id", name="uq_rate_limit_account_resource"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    resource_id: Mapped[str] = mapped_column(String(128), nullable=False)
    daily_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    minute_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_daily_reset: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    last_minute_reset: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), default=naive_utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), default=naive_utcnow, onupdate=naive_utcnow, nullable=False
    )
