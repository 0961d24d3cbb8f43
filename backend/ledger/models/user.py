"""
User Model — the slice of the user record this service owns.
The points balance (PointsAccount) is embedded here and only changed
through the Points Ledger's conditional updates.
"""
from sqlalchemy import Column, String, Integer, DateTime, CheckConstraint

from ledger.database import Base
from ledger.utils.clock import utcnow


class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("points >= 0", name="ck_users_points_non_negative"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    username = Column(String(64), unique=True, nullable=False)
    points = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
