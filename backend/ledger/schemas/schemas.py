"""
Pydantic Schemas — Request & Response models for API validation.
"""
from datetime import datetime
from typing import Optional, Dict, List, Union
from pydantic import BaseModel, Field


# ──────────────── Orders ────────────────

class OrderCreateRequest(BaseModel):
    product_type: str = Field(..., description="coins or subscription")
    package_id: Optional[str] = Field(None, description="Recharge package id, for coins")
    tier_id: Optional[int] = Field(None, description="Membership tier id, for subscription")
    period: Optional[str] = Field(None, description="monthly, quarterly or yearly")


class OrderCreateResponse(BaseModel):
    success: bool = True
    orderNo: str
    payUrl: str
    amount: int
    expiresAt: datetime


class OrderResponse(BaseModel):
    orderNo: str
    userId: int
    amount: int
    currency: str
    productType: str
    productId: str
    productName: str = ""
    status: str
    tradeNo: Optional[str] = None
    createdAt: Optional[str] = None
    expiresAt: Optional[str] = None
    paidAt: Optional[str] = None


class OrderListResponse(BaseModel):
    success: bool = True
    orders: List[OrderResponse] = []


class OrderCancelRequest(BaseModel):
    reason: str = Field("", max_length=256)


# ──────────────── Gateway callback ────────────────

class CallbackPayload(BaseModel):
    order_no: str
    trade_no: str
    amount: Union[int, str] = Field(..., description="Minor units")
    status: str = Field(..., description="success or failed")
    timestamp: Union[int, str]
    nonce: str
    sign: str


class CallbackResponse(BaseModel):
    success: bool = True
    message: str
    orderNo: str
    status: str


# ──────────────── Wallet ────────────────

class WalletResponse(BaseModel):
    success: bool = True
    userId: int
    balance: int


class TransactionResponse(BaseModel):
    id: int
    amount: int
    type: str
    source: str
    referenceType: Optional[str] = None
    referenceId: Optional[str] = None
    balanceBefore: int
    balanceAfter: int
    description: Optional[str] = None
    createdAt: datetime


class WalletHistoryResponse(BaseModel):
    success: bool = True
    transactions: List[TransactionResponse] = []


class DailyRewardResponse(BaseModel):
    success: bool = True
    coins: int
    balance: int
    claimDate: str


class RechargePackageResponse(BaseModel):
    id: str
    coins: int
    bonus: int
    totalCoins: int
    price: int
    label: str


# ──────────────── Subscription ────────────────

class TierResponse(BaseModel):
    id: int
    name: str
    displayName: str
    rank: int
    prices: Dict[str, int]
    privileges: Dict


class SubscriptionResponse(BaseModel):
    success: bool = True
    tier: TierResponse
    subscriptionId: Optional[int] = None
    period: Optional[str] = None
    startDate: Optional[datetime] = None
    endDate: Optional[datetime] = None
    autoRenew: bool = False
    cancelledAt: Optional[datetime] = None


class SubscriptionCancelRequest(BaseModel):
    reason: str = Field("", max_length=256)


# ──────────────── Shop ────────────────

class ShopPurchaseRequest(BaseModel):
    item_id: int = Field(..., gt=0)


class ShopPurchaseResponse(BaseModel):
    success: bool = True
    purchaseId: int
    itemId: int
    balance: int


# ──────────────── Admin ────────────────

class GiftRequest(BaseModel):
    user_id: int
    amount: int = Field(..., description="Points to grant, positive integer")
    reason: str = Field(..., min_length=1, max_length=256)
    operator_id: Optional[int] = None


class RefundRequest(BaseModel):
    reason: str = Field("", max_length=256)


class AuditEntryResponse(BaseModel):
    id: int
    user_id: Optional[int] = None
    actor: str
    action: str
    target_type: Optional[str] = None
    target_id: Optional[str] = None
    risk_level: str
    old_value: Optional[Union[Dict, List]] = None
    new_value: Optional[Union[Dict, List]] = None
    ip_address: Optional[str] = None
    payload_hash: str
    timestamp: datetime

    class Config:
        from_attributes = True
