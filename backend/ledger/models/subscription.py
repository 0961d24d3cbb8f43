"""
Subscription Model — a user's membership period for one tier.
"""
from sqlalchemy import Column, String, Integer, DateTime, Boolean, ForeignKey, Index, text

from ledger.database import Base
from ledger.utils.clock import utcnow

SUB_ACTIVE = "active"
SUB_EXPIRED = "expired"
SUB_CANCELLED = "cancelled"
SUB_PENDING = "pending"


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        # At most one active subscription per user.
        Index(
            "uq_subscriptions_active_user",
            "user_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    tier_id = Column(Integer, ForeignKey("membership_tiers.id"), nullable=False)

    period = Column(String(16), nullable=False)       # monthly | quarterly | yearly
    status = Column(String(16), nullable=False, default=SUB_ACTIVE, index=True)

    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False, index=True)

    auto_renew = Column(Boolean, nullable=False, default=True)
    next_notify_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancel_reason = Column(String(256), nullable=True)

    order_no = Column(String(32), nullable=True)      # order that last extended this row

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
