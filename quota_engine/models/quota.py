"""SQLAlchemy models backing feature quota configuration and usage."""

from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import Boolean, Date, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from ..core.windows import naive_utcnow
from ..db.session import Base


class QuotaConfigModel(Base):
    """Limit and window for a (feature, plan) pair."""

    __tablename__ = "quota_configs"
    __table_args__ = (UniqueConstraint("feature", "plan", name="uq_quota_config_feature_plan"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    feature: Mapped[str] = mapped_column(String(32), nullable=False)
    plan: Mapped[str] = mapped_column(String(32), nullable=False)
    quota_limit: Mapped[int] = mapped_column(Integer, nullable=False)
    quota_window: Mapped[str] = mapped_column(String(16), nullable=False, default="daily")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), default=naive_utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), default=naive_utcnow, onupdate=naive_utcnow, nullable=False
    )


class QuotaUsageModel(Base):
    """Units consumed by an account for a feature within one period."""

    __tablename__ = "quota_usage"
    __table_args__ = (
        UniqueConstraint("account_id", "feature", "period_start", name="uq_quota_usage_period"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    feature: Mapped[str] = mapped_column(String(32), nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), default=naive_utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), default=naive_utcnow, onupdate=naive_utcnow, nullable=False
    )
