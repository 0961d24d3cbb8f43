"""
Audit Log Model — Immutable, tamper-evident audit trail.
Each record is SHA-256 chained to the previous record of the same user.
"""
from sqlalchemy import Column, String, Integer, DateTime, JSON

from ledger.database import Base
from ledger.utils.clock import utcnow


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    user_id = Column(Integer, nullable=True, index=True)   # None for system / anonymous actors
    actor = Column(String(64), nullable=False, default="system")

    action = Column(String(50), nullable=False, index=True)
    # Actions: ORDER_CREATED, PAYMENT_SUCCESS, PAYMENT_FAILED, ORDER_CANCELLED,
    #          ORDER_EXPIRED, ORDER_REFUNDED, POINTS_CREDIT, POINTS_DEBIT, ...

    target_type = Column(String(32))
    target_id = Column(String(64))
    old_value = Column(JSON, nullable=True)
    new_value = Column(JSON, nullable=True)
    risk_level = Column(String(8), nullable=False, default="low", index=True)

    payload_hash = Column(String(64))       # chain hash of this record
    previous_hash = Column(String(64))      # chain hash of the previous record

    ip_address = Column(String(45))
    user_agent = Column(String(256))

    log_metadata = Column(JSON, default=dict)
    timestamp = Column(DateTime, default=utcnow, index=True)
