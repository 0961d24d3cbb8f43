"""
Validators — amount, identifier and catalog-code checks.
"""
import re

from ledger.exceptions import InvalidAmount, InvalidInput

ORDER_NO_PATTERN = re.compile(r"^ORD\d{14}[0-9A-Z]{6}$")
PRODUCT_TYPES = ("subscription", "coins", "shop_item")
PERIODS = ("monthly", "quarterly", "yearly")


def require_positive_int(amount, field: str = "amount") -> int:
    """Return ``amount`` as int or raise ``InvalidAmount``. Floats and bools are rejected."""
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount(f"{field} must be an integer, got {type(amount).__name__}")
    if amount <= 0:
        raise InvalidAmount(f"{field} must be positive, got {amount}")
    return amount


def parse_minor_units(value) -> int:
    """Parse a callback amount (int or digit string) into minor units.

    Decimal strings are refused instead of being rounded: gateways report
    minor units and a fractional value means the payload is malformed.
    """
    if isinstance(value, bool):
        raise InvalidInput("amount is malformed")
    if isinstance(value, int):
        return value
    text = str(value or "").strip()
    if not re.fullmatch(r"-?\d+", text):
        raise InvalidInput("amount is malformed")
    return int(text)


def validate_amount(paid_amount: int, order_amount: int, tolerance: int = 0) -> bool:
    """Loose comparison for reporting; settlement itself always matches exactly."""
    return abs(int(paid_amount) - int(order_amount)) <= tolerance


def validate_order_no(order_no: str | None) -> bool:
    if not order_no:
        return False
    return bool(ORDER_NO_PATTERN.match(order_no.strip()))


def validate_product_type(product_type: str | None) -> str:
    value = (product_type or "").strip().lower()
    if value not in PRODUCT_TYPES:
        raise InvalidInput(f"unknown product type: {product_type!r}")
    return value


def validate_period(period: str | None) -> str:
    value = (period or "").strip().lower()
    if value not in PERIODS:
        raise InvalidInput(f"unknown subscription period: {period!r}")
    return value


def parse_subscription_product(product_id: str) -> tuple[int, str]:
    """Split ``"<tierId>:<period>"`` into its parts."""
    tier_part, _, period = (product_id or "").partition(":")
    if not tier_part.isdigit():
        raise InvalidInput(f"malformed subscription product id: {product_id!r}")
    return int(tier_part), validate_period(period)
