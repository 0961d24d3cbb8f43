"""
Payment Order Model — one purchase attempt and its lifecycle.
Rows are never deleted; terminal orders stay for audit.
"""
from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, CheckConstraint

from ledger.database import Base
from ledger.utils.clock import utcnow

ORDER_PENDING = "pending"
ORDER_PAID = "paid"
ORDER_FAILED = "failed"
ORDER_CANCELLED = "cancelled"
ORDER_EXPIRED = "expired"
ORDER_REFUNDED = "refunded"


class PaymentOrder(Base):
    __tablename__ = "payment_orders"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payment_orders_amount_positive"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    order_no = Column(String(32), unique=True, nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    amount = Column(Integer, nullable=False)            # minor units (fen)
    currency = Column(String(8), nullable=False, default="CNY")
    payment_method = Column(String(16), nullable=False, default="mock")

    product_type = Column(String(16), nullable=False)   # subscription | coins | shop_item
    product_id = Column(String(64), nullable=False)     # "130" for coins, "2:monthly" for subscriptions
    product_name = Column(String(128), default="")

    status = Column(String(16), nullable=False, default=ORDER_PENDING, index=True)
    # Statuses: pending -> paid | failed | cancelled | expired ; paid -> refunded

    nonce = Column(String(64), nullable=False)
    trade_no = Column(String(64), unique=True, nullable=True)   # gateway reference, set once paid

    client_ip = Column(String(45))
    user_agent = Column(String(256))

    created_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False, index=True)
    paid_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
