"""
Subscription Routes — Current membership, cancel/resume and the tier list.
"""
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ledger.database import get_db
from ledger.routes.deps import current_user_id, tier_catalog
from ledger.schemas.schemas import SubscriptionCancelRequest, SubscriptionResponse, TierResponse
from ledger.services.subscription_service import SubscriptionService
from ledger.services.tier_service import TierCatalog, TierInfo

router = APIRouter(prefix="/api/subscription", tags=["Subscription"])


def _tier_response(tier: TierInfo) -> TierResponse:
    return TierResponse(
        id=tier.id,
        name=tier.name,
        displayName=tier.display_name,
        rank=tier.rank,
        prices={
            "monthly": tier.price_monthly,
            "quarterly": tier.price_quarterly,
            "yearly": tier.price_yearly,
        },
        privileges=tier.privileges.model_dump(),
    )


def _subscription_response(service: SubscriptionService, user_id: int) -> SubscriptionResponse:
    tier = service.current_tier(user_id)
    sub = service.current(user_id)
    if sub is None:
        return SubscriptionResponse(tier=_tier_response(tier))
    return SubscriptionResponse(
        tier=_tier_response(tier),
        subscriptionId=sub.id,
        period=sub.period,
        startDate=sub.start_date,
        endDate=sub.end_date,
        autoRenew=bool(sub.auto_renew),
        cancelledAt=sub.cancelled_at,
    )


@router.get("", response_model=SubscriptionResponse)
def get_subscription(
    user_id: int = Depends(current_user_id),
    catalog: TierCatalog = Depends(tier_catalog),
    db: Session = Depends(get_db),
):
    """Current tier (free when nothing active) and the active subscription, if any."""
    return _subscription_response(SubscriptionService(db, catalog=catalog), user_id)


@router.post("/cancel", response_model=SubscriptionResponse)
def cancel_subscription(
    payload: Optional[SubscriptionCancelRequest] = None,
    user_id: int = Depends(current_user_id),
    catalog: TierCatalog = Depends(tier_catalog),
    db: Session = Depends(get_db),
):
    """Turn off auto-renewal. Access lasts until the paid period ends."""
    service = SubscriptionService(db, catalog=catalog)
    service.cancel(user_id, reason=payload.reason if payload else "")
    return _subscription_response(service, user_id)


@router.post("/resume", response_model=SubscriptionResponse)
def resume_subscription(
    user_id: int = Depends(current_user_id),
    catalog: TierCatalog = Depends(tier_catalog),
    db: Session = Depends(get_db),
):
    service = SubscriptionService(db, catalog=catalog)
    service.resume(user_id)
    return _subscription_response(service, user_id)


@router.get("/tiers", response_model=list[TierResponse])
def list_tiers(catalog: TierCatalog = Depends(tier_catalog)):
    return [_tier_response(catalog.free)] + [_tier_response(t) for t in catalog.purchasable()]
