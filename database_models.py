from sqlalchemy import Column, Integer, String, Boolean, DateTime, Date, PrimaryKeyConstraint, false
from datetime import datetime, timezone

from database import Base
from config.settings import PLAN_FREE


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Account(Base):
    """
    Account profile owned by the identity provider.
    Billing only flips plan/trial_until; is_admin is set by hand.
    """
    __tablename__ = "accounts"

    id = Column(String, primary_key=True, index=True)
    email = Column(String, nullable=True, index=True)
    plan = Column(String, nullable=False, default=PLAN_FREE, server_default=PLAN_FREE)
    is_admin = Column(Boolean, nullable=False, default=False, server_default=false())
    trial_until = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)


class DailyUsage(Base):
    """
    Per-account, per-day counter for rate-limited actions on the free tier.
    """
    __tablename__ = "daily_usage"
    __table_args__ = (
        PrimaryKeyConstraint("account_id", "day", "action"),
    )

    account_id = Column(String, nullable=False, index=True)
    day = Column(Date, nullable=False)
    action = Column(String, nullable=False)
    count = Column(Integer, nullable=False, default=0)
