"""
Ledger Errors — Typed failures surfaced to callers.

Every rejection carries a stable ``code`` (what API clients see), an HTTP
status and a category:

    validation      bad input, never persisted
    conflict        wrong state / insufficient funds, expected under concurrency
    security        bad signature, replay, expired signature window
    infrastructure  store unavailable, caller should retry later
"""
from typing import Optional

VALIDATION = "validation"
CONFLICT = "conflict"
SECURITY = "security"
INFRASTRUCTURE = "infrastructure"


class LedgerError(Exception):
    code = "LedgerError"
    category = CONFLICT
    http_status = 400
    public_message = "Request rejected"

    def __init__(self, message: Optional[str] = None, **context):
        super().__init__(message or self.public_message)
        self.message = message or self.public_message
        self.context = context

    def to_dict(self) -> dict:
        # Security failures never leak internal detail.
        message = self.public_message if self.category == SECURITY else self.message
        return {"success": False, "error": self.code, "message": message}


# ─── Validation ──────────────────────────────────────────────────────

class InvalidInput(LedgerError):
    code = "InvalidInput"
    category = VALIDATION
    http_status = 400
    public_message = "Invalid request parameters"


class InvalidAmount(InvalidInput):
    code = "InvalidAmount"
    public_message = "Amount must be a positive integer"


class UnsupportedProduct(InvalidInput):
    code = "UnsupportedProduct"
    public_message = "Product type is not supported here"


# ─── State conflicts ─────────────────────────────────────────────────

class OrderNotFound(LedgerError):
    code = "OrderNotFound"
    http_status = 404
    public_message = "Order not found"


class UserNotFound(LedgerError):
    code = "UserNotFound"
    http_status = 404
    public_message = "User not found"


class SubscriptionNotFound(LedgerError):
    code = "SubscriptionNotFound"
    http_status = 404
    public_message = "No active subscription"


class ItemNotFound(LedgerError):
    code = "ItemNotFound"
    http_status = 404
    public_message = "Shop item not found or inactive"


class AlreadyTerminal(LedgerError):
    code = "AlreadyTerminal"
    http_status = 409
    public_message = "Order is no longer in a state that allows this transition"


class OrderExpired(LedgerError):
    code = "Expired"
    http_status = 410
    public_message = "Order has expired"


class AmountMismatch(LedgerError):
    code = "AmountMismatch"
    http_status = 400
    public_message = "Confirmed amount does not match the order"


class InsufficientBalance(LedgerError):
    code = "InsufficientBalance"
    http_status = 409
    public_message = "Insufficient points balance"


class OutOfStock(LedgerError):
    code = "OutOfStock"
    http_status = 409
    public_message = "Item is sold out"


class AlreadyOwned(LedgerError):
    code = "AlreadyOwned"
    http_status = 409
    public_message = "Item is already owned"


class AlreadyClaimed(LedgerError):
    code = "AlreadyClaimed"
    http_status = 409
    public_message = "Reward already claimed today"


class ConcurrentModification(LedgerError):
    code = "ConcurrentModification"
    http_status = 409
    public_message = "Record changed concurrently, retry the request"


# ─── Security ────────────────────────────────────────────────────────

class InvalidSignature(LedgerError):
    code = "InvalidSignature"
    category = SECURITY
    http_status = 403
    public_message = "Signature verification failed"


class SignatureExpired(LedgerError):
    code = "Expired"
    category = SECURITY
    http_status = 400
    public_message = "Request has expired"


class ReplayDetected(LedgerError):
    code = "ReplayDetected"
    category = SECURITY
    http_status = 409
    public_message = "Request has already been processed"


class CallbackForbidden(LedgerError):
    code = "Forbidden"
    category = SECURITY
    http_status = 403
    public_message = "Forbidden"


# ─── Infrastructure ──────────────────────────────────────────────────

class StoreUnavailable(LedgerError):
    code = "StoreUnavailable"
    category = INFRASTRUCTURE
    http_status = 503
    public_message = "Storage temporarily unavailable, try again later"
