"""
Mock Gateway — stands in for the payment provider in development and tests.

It produces exactly what a real provider would post to the callback
endpoint: the order's fields plus ``timestamp``/``nonce``, signed with the
callback secret.
"""
import secrets
from datetime import datetime
from typing import Callable, Optional

from ledger.config import Settings, get_settings
from ledger.models.order import PaymentOrder
from ledger.services.order_service import OUTCOME_FAILED, OUTCOME_SUCCESS
from ledger.exceptions import InvalidInput
from ledger.utils.clock import unix_seconds, utcnow
from ledger.utils.signing import SignatureGuard, generate_nonce


class MockGateway:
    def __init__(self, settings: Optional[Settings] = None, clock: Callable[[], datetime] = utcnow):
        self.settings = settings or get_settings()
        self.clock = clock
        self.guard = SignatureGuard(
            self.settings.callback_secret,
            self.settings.CALLBACK_SIGNATURE_WINDOW_SECONDS,
            clock=clock,
        )

    def trade_no(self) -> str:
        return f"MOCK{unix_seconds(self.clock())}{secrets.token_hex(4).upper()}"

    def complete(self, order: PaymentOrder, outcome: str = OUTCOME_SUCCESS, amount: Optional[int] = None) -> dict:
        """Signed callback params for ``order``; ``amount`` overrides the reported amount."""
        if outcome not in (OUTCOME_SUCCESS, OUTCOME_FAILED):
            raise InvalidInput(f"unknown payment outcome: {outcome!r}")
        params = {
            "order_no": order.order_no,
            "trade_no": self.trade_no(),
            "amount": str(order.amount if amount is None else amount),
            "status": outcome,
            "timestamp": str(self.guard.now()),
            "nonce": generate_nonce(),
        }
        params["sign"] = self.guard.sign_params(params)
        return params
