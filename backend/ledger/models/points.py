"""
Points Transaction Model — append-only ledger of balance changes.
Summing ``amount`` per user in creation order reproduces the balance.

``DailyClaim`` holds one row per user per day; its unique key is what
makes the daily login reward claimable once.
"""
from sqlalchemy import Column, String, Integer, Date, DateTime, ForeignKey, Index, UniqueConstraint

from ledger.database import Base
from ledger.utils.clock import utcnow

TX_EARN = "earn"
TX_SPEND = "spend"
TX_GIFT = "gift"
TX_REFUND = "refund"


class PointsTransaction(Base):
    __tablename__ = "points_transactions"
    __table_args__ = (
        Index("ix_points_transactions_user_created", "user_id", "created_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    amount = Column(Integer, nullable=False)          # + credit, - debit
    type = Column(String(16), nullable=False)         # earn | spend | gift | refund
    source = Column(String(32), nullable=False)       # purchase | shop | admin | refund | daily_login

    reference_type = Column(String(32))               # order | shop_item | transaction | daily_claim
    reference_id = Column(String(64))

    balance_before = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)

    description = Column(String(256))
    operator_id = Column(Integer, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)


class DailyClaim(Base):
    __tablename__ = "daily_claims"
    __table_args__ = (
        UniqueConstraint("user_id", "claim_date", name="uq_daily_claims_user_date"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    claim_date = Column(Date, nullable=False)         # UTC day
    coins = Column(Integer, nullable=False, default=0)
    transaction_id = Column(Integer, ForeignKey("points_transactions.id"), nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
