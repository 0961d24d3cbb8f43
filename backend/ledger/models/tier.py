"""
Membership Tier Model — read-mostly reference data.
``privileges`` holds JSON that is parsed into ``TierPrivileges``.
"""
from sqlalchemy import Column, String, Integer, Boolean, JSON

from ledger.database import Base


class MembershipTier(Base):
    __tablename__ = "membership_tiers"

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    name = Column(String(32), unique=True, nullable=False)     # free | vip | svip
    display_name = Column(String(64), nullable=False)
    description = Column(String(256), default="")
    rank = Column(Integer, nullable=False, default=0)

    price_monthly = Column(Integer, nullable=False, default=0)     # minor units
    price_quarterly = Column(Integer, nullable=False, default=0)
    price_yearly = Column(Integer, nullable=False, default=0)

    privileges = Column(JSON, default=dict)
    badge_color = Column(String(16))
    is_active = Column(Boolean, nullable=False, default=True)
