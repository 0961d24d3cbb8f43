"""
Wallet Routes — Points balance, history, recharge packages and the daily login reward.
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ledger.config import get_settings
from ledger.database import get_db
from ledger.routes.deps import current_user_id, tier_catalog
from ledger.schemas.schemas import (
    DailyRewardResponse, RechargePackageResponse, TransactionResponse, WalletHistoryResponse,
    WalletResponse,
)
from ledger.services.points_ledger import PointsLedger, RECHARGE_PACKAGES
from ledger.services.subscription_service import SubscriptionService
from ledger.services.tier_service import TierCatalog

router = APIRouter(prefix="/api/wallet", tags=["Wallet"])


@router.get("", response_model=WalletResponse)
def get_wallet(user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    return WalletResponse(userId=user_id, balance=PointsLedger(db).balance(user_id))


@router.get("/history", response_model=WalletHistoryResponse)
def get_history(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    ledger = PointsLedger(db)
    ledger.balance(user_id)  # 404 for unknown users
    return WalletHistoryResponse(
        transactions=[
            TransactionResponse(
                id=tx.id,
                amount=tx.amount,
                type=tx.type,
                source=tx.source,
                referenceType=tx.reference_type,
                referenceId=tx.reference_id,
                balanceBefore=tx.balance_before,
                balanceAfter=tx.balance_after,
                description=tx.description,
                createdAt=tx.created_at,
            )
            for tx in ledger.history(user_id, limit=limit, offset=offset)
        ]
    )


@router.get("/packages", response_model=list[RechargePackageResponse])
def list_packages():
    return [
        RechargePackageResponse(
            id=p.id, coins=p.coins, bonus=p.bonus, totalCoins=p.total_coins,
            price=p.price, label=p.label,
        )
        for p in RECHARGE_PACKAGES
    ]


@router.post("/daily-reward", response_model=DailyRewardResponse)
def claim_daily_reward(
    user_id: int = Depends(current_user_id),
    catalog: TierCatalog = Depends(tier_catalog),
    db: Session = Depends(get_db),
):
    """Once per UTC day; the current tier's coin multiplier scales the reward."""
    multiplier = SubscriptionService(db, catalog=catalog).privilege_value(user_id, "coin_multiplier", 1.0)
    tx = PointsLedger(db).claim_daily_reward(user_id, get_settings().DAILY_REWARD_BASE, multiplier)
    return DailyRewardResponse(coins=tx.amount, balance=tx.balance_after, claimDate=tx.reference_id)
