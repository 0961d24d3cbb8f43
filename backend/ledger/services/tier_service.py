"""
Tier Catalog — membership tiers and their privilege sets.

Privileges are parsed into a fixed schema. Unknown keys are ignored and
missing or malformed values fall back to the free-tier defaults, so a bad
row can never grant more than the free plan.
"""
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, ValidationError
from sqlalchemy.orm import Session

from ledger.exceptions import InvalidInput
from ledger.models.tier import MembershipTier
from ledger.utils.logger import get_logger

logger = get_logger(__name__)

FREE_TIER_NAME = "free"


class TierPrivileges(BaseModel):
    """Privilege set granted by a tier. Defaults are the free plan."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    max_animes: int = 20                 # -1 = unlimited
    max_gallery_per_day: int = 50
    ai_chat_per_day: int = 3
    coin_multiplier: float = 1.0
    ad_free: bool = False
    download: bool = False
    custom_theme: bool = False
    exclusive_emoji: bool = False
    exclusive_effect: bool = False
    early_access: bool = False
    priority_support: bool = False
    exclusive_badge: bool = False
    mission_bonus: int = 0
    chat_model: str = "basic"

    @classmethod
    def parse(cls, raw) -> "TierPrivileges":
        if not isinstance(raw, dict):
            return cls()
        try:
            return cls.model_validate(raw)
        except ValidationError:
            logger.warning("tier privileges malformed, using defaults: %s", raw)
            return cls()


class TierInfo(BaseModel):
    """Immutable snapshot of one tier."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    display_name: str
    rank: int
    price_monthly: int
    price_quarterly: int
    price_yearly: int
    privileges: TierPrivileges
    is_active: bool = True

    def price(self, period: str) -> int:
        return {
            "monthly": self.price_monthly,
            "quarterly": self.price_quarterly,
            "yearly": self.price_yearly,
        }[period]


FREE_TIER_SENTINEL = TierInfo(
    id=0,
    name=FREE_TIER_NAME,
    display_name="Free",
    rank=0,
    price_monthly=0,
    price_quarterly=0,
    price_yearly=0,
    privileges=TierPrivileges(),
)


class TierCatalog:
    """In-memory view of the tier table, handed to services at construction."""

    def __init__(self, tiers: List[TierInfo]):
        self._by_id: Dict[int, TierInfo] = {t.id: t for t in tiers}
        self._by_name: Dict[str, TierInfo] = {t.name: t for t in tiers}

    @classmethod
    def load(cls, db: Session) -> "TierCatalog":
        rows = db.query(MembershipTier).order_by(MembershipTier.rank.asc()).all()
        return cls([_to_info(row) for row in rows])

    @property
    def free(self) -> TierInfo:
        return self._by_name.get(FREE_TIER_NAME, FREE_TIER_SENTINEL)

    def get(self, tier_id: int) -> Optional[TierInfo]:
        return self._by_id.get(tier_id)

    def require(self, tier_id: int) -> TierInfo:
        tier = self._by_id.get(tier_id)
        if tier is None or not tier.is_active:
            raise InvalidInput(f"unknown membership tier: {tier_id}")
        return tier

    def by_name(self, name: str) -> Optional[TierInfo]:
        return self._by_name.get(name)

    def rank(self, tier_id: int) -> int:
        tier = self._by_id.get(tier_id)
        return tier.rank if tier else self.free.rank

    def purchasable(self) -> List[TierInfo]:
        return sorted(
            (t for t in self._by_id.values() if t.is_active and t.name != FREE_TIER_NAME),
            key=lambda t: t.rank,
        )


def _to_info(row: MembershipTier) -> TierInfo:
    return TierInfo(
        id=row.id,
        name=row.name,
        display_name=row.display_name,
        rank=row.rank,
        price_monthly=row.price_monthly,
        price_quarterly=row.price_quarterly,
        price_yearly=row.price_yearly,
        privileges=TierPrivileges.parse(row.privileges),
        is_active=bool(row.is_active),
    )


DEFAULT_TIERS = [
    {
        "name": "free", "display_name": "Free", "rank": 0,
        "price_monthly": 0, "price_quarterly": 0, "price_yearly": 0,
        "privileges": {},
    },
    {
        "name": "vip", "display_name": "VIP", "rank": 1,
        "price_monthly": 1500, "price_quarterly": 4000, "price_yearly": 15000,
        "badge_color": "#f5a623",
        "privileges": {
            "max_animes": 200, "max_gallery_per_day": 500, "ai_chat_per_day": 30,
            "coin_multiplier": 1.5, "ad_free": True, "download": True,
            "custom_theme": True, "exclusive_emoji": True, "mission_bonus": 10,
            "chat_model": "standard",
        },
    },
    {
        "name": "svip", "display_name": "SVIP", "rank": 2,
        "price_monthly": 3000, "price_quarterly": 8000, "price_yearly": 30000,
        "badge_color": "#9b59b6",
        "privileges": {
            "max_animes": -1, "max_gallery_per_day": -1, "ai_chat_per_day": 200,
            "coin_multiplier": 2.0, "ad_free": True, "download": True,
            "custom_theme": True, "exclusive_emoji": True, "exclusive_effect": True,
            "early_access": True, "priority_support": True, "exclusive_badge": True,
            "mission_bonus": 25, "chat_model": "advanced",
        },
    },
]


def seed_default_tiers(db: Session) -> int:
    """Insert the default tiers that are missing. Returns how many were added."""
    existing = {name for (name,) in db.query(MembershipTier.name).all()}
    added = 0
    for tier in DEFAULT_TIERS:
        if tier["name"] in existing:
            continue
        db.add(MembershipTier(**tier))
        added += 1
    if added:
        db.commit()
    return added
