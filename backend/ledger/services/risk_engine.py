"""
Risk Engine — fixed risk classification for audited actions.
"""
from typing import Dict

LOW = "low"
MEDIUM = "medium"
HIGH = "high"


class AuditAction:
    """Audit action kinds."""

    ORDER_CREATED = "ORDER_CREATED"
    PAYMENT_SUCCESS = "PAYMENT_SUCCESS"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    PAYMENT_REJECTED = "PAYMENT_REJECTED"
    ORDER_CANCELLED = "ORDER_CANCELLED"
    ORDER_EXPIRED = "ORDER_EXPIRED"
    ORDER_REFUNDED = "ORDER_REFUNDED"

    POINTS_CREDIT = "POINTS_CREDIT"
    POINTS_DEBIT = "POINTS_DEBIT"
    POINTS_REFUND = "POINTS_REFUND"
    POINTS_GIFT = "POINTS_GIFT"

    SUBSCRIPTION_ACTIVATED = "SUBSCRIPTION_ACTIVATED"
    SUBSCRIPTION_RENEWED = "SUBSCRIPTION_RENEWED"
    SUBSCRIPTION_UPGRADED = "SUBSCRIPTION_UPGRADED"
    SUBSCRIPTION_CANCELLED = "SUBSCRIPTION_CANCELLED"
    SUBSCRIPTION_RESUMED = "SUBSCRIPTION_RESUMED"
    SUBSCRIPTION_EXPIRED = "SUBSCRIPTION_EXPIRED"

    SHOP_PURCHASE = "SHOP_PURCHASE"
    ENTITLEMENT_GRANTED = "ENTITLEMENT_GRANTED"

    SIGNATURE_INVALID = "SIGNATURE_INVALID"
    SIGNATURE_EXPIRED = "SIGNATURE_EXPIRED"
    REPLAY_DETECTED = "REPLAY_DETECTED"
    CALLBACK_IP_REJECTED = "CALLBACK_IP_REJECTED"


_RISK_TABLE: Dict[str, str] = {
    AuditAction.ORDER_REFUNDED: HIGH,
    AuditAction.ORDER_CANCELLED: HIGH,
    AuditAction.POINTS_REFUND: HIGH,
    AuditAction.POINTS_GIFT: HIGH,
    AuditAction.SUBSCRIPTION_CANCELLED: HIGH,
    AuditAction.PAYMENT_REJECTED: HIGH,
    AuditAction.SIGNATURE_INVALID: HIGH,
    AuditAction.REPLAY_DETECTED: HIGH,
    AuditAction.CALLBACK_IP_REJECTED: HIGH,

    AuditAction.PAYMENT_SUCCESS: MEDIUM,
    AuditAction.SUBSCRIPTION_RENEWED: MEDIUM,
    AuditAction.SUBSCRIPTION_UPGRADED: MEDIUM,
    AuditAction.SIGNATURE_EXPIRED: MEDIUM,
}


class RiskEngine:
    """Maps audit actions to a risk level."""

    @staticmethod
    def classify(action: str) -> str:
        """Refunds, cancellations and security rejections are high; payment
        success and renewals are medium; everything else is low."""
        return _RISK_TABLE.get(action, LOW)

    @staticmethod
    def requires_review(risk_level: str) -> bool:
        return risk_level == HIGH
