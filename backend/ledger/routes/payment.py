"""
Payment Routes — Order creation, gateway callbacks and the mock pay page.
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from ledger.config import get_settings
from ledger.database import get_db
from ledger.exceptions import InvalidInput, OrderNotFound, UnsupportedProduct
from ledger.routes.deps import client_ip, current_user_id, tier_catalog, user_agent
from ledger.schemas.schemas import (
    CallbackResponse, OrderCancelRequest, OrderCreateRequest, OrderCreateResponse,
    OrderListResponse, OrderResponse,
)
from ledger.services.callback_service import PaymentCallbackService
from ledger.services.mock_gateway import MockGateway
from ledger.services.order_service import OrderService, OUTCOME_SUCCESS, order_to_dict
from ledger.services.points_ledger import find_package
from ledger.services.replay_guard import NonceRegistry
from ledger.services.tier_service import TierCatalog
from ledger.utils.rate_limiter import rate_limit
from ledger.utils.ttl_store import get_ttl_store
from ledger.utils.validators import validate_period, validate_product_type

router = APIRouter(prefix="/api/payment", tags=["Payment"])


@router.post("/orders", response_model=OrderCreateResponse)
def create_order(
    payload: OrderCreateRequest,
    user_id: int = Depends(current_user_id),
    ip: Optional[str] = Depends(client_ip),
    agent: str = Depends(user_agent),
    catalog: TierCatalog = Depends(tier_catalog),
    db: Session = Depends(get_db),
    _throttle: bool = Depends(rate_limit(requests=10, window=60, scope="orders")),
):
    """Create a pending order for a recharge package or a membership tier."""
    product_type = validate_product_type(payload.product_type)

    if product_type == "coins":
        package = find_package(payload.package_id or "")
        amount = package.price
        product_id = str(package.total_coins)
        product_name = f"Recharge {package.total_coins} coins (bonus {package.bonus})"
    elif product_type == "subscription":
        if payload.tier_id is None:
            raise InvalidInput("tier_id is required for subscription orders")
        tier = catalog.require(payload.tier_id)
        period = validate_period(payload.period)
        amount = tier.price(period)
        if amount <= 0:
            raise InvalidInput(f"tier {tier.name} cannot be purchased")
        product_id = f"{tier.id}:{period}"
        product_name = f"{tier.display_name} ({period})"
    else:
        raise UnsupportedProduct("shop items are bought with points via /api/shop/purchase")

    created = OrderService(db).create_order(
        user_id, amount, product_type, product_id, product_name,
        client_ip=ip, user_agent=agent,
    )
    return OrderCreateResponse(
        orderNo=created.order.order_no,
        payUrl=created.pay_url,
        amount=created.order.amount,
        expiresAt=created.order.expires_at,
    )


@router.post("/callback", response_model=CallbackResponse)
async def payment_callback(request: Request, db: Session = Depends(get_db)):
    """Gateway confirmation. Accepts a JSON body or form fields."""
    if "application/json" in request.headers.get("content-type", ""):
        try:
            params = await request.json()
        except ValueError:
            raise InvalidInput("callback body is not valid JSON")
        if not isinstance(params, dict):
            raise InvalidInput("callback body must be an object")
    else:
        params = dict(await request.form())

    ip = request.client.host if request.client else None
    result = await run_in_threadpool(PaymentCallbackService(db).process, params, ip)
    return CallbackResponse(
        message="Already processed" if result.duplicate else "Processed",
        orderNo=result.order_no,
        status=result.status,
    )


@router.get("/mock-complete", response_model=CallbackResponse)
def mock_complete(
    order_no: str = Query(..., alias="orderNo"),
    nonce: str = Query(...),
    ts: int = Query(...),
    sig: str = Query(...),
    outcome: str = Query(OUTCOME_SUCCESS),
    db: Session = Depends(get_db),
):
    """Simulated gateway page: checks the signed pay link, then posts a signed callback."""
    settings = get_settings()
    if settings.is_production:
        raise HTTPException(status_code=404, detail="Not found")

    orders = OrderService(db)
    order = orders.verify_pay_request(order_no, nonce, ts, sig)
    NonceRegistry(
        get_ttl_store(), settings.NONCE_TTL_SECONDS,
        min_window_seconds=settings.REQUEST_SIGNATURE_WINDOW_SECONDS,
    ).consume(nonce, scope="pay")

    params = MockGateway(settings).complete(order, outcome)
    result = PaymentCallbackService(db, settings=settings).process(params, internal=True)
    return CallbackResponse(
        message="Mock payment completed",
        orderNo=result.order_no,
        status=result.status,
    )


@router.get("/orders", response_model=OrderListResponse)
def list_orders(
    status: Optional[str] = None,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    orders = OrderService(db).list_for_user(user_id, status=status, limit=limit, offset=offset)
    return OrderListResponse(orders=[OrderResponse(**order_to_dict(o)) for o in orders])


@router.get("/orders/{order_no}", response_model=OrderResponse)
def get_order(order_no: str, user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    order = OrderService(db).get(order_no)
    if order.user_id != user_id:
        raise OrderNotFound(f"order {order_no} not found")
    return OrderResponse(**order_to_dict(order))


@router.post("/orders/{order_no}/cancel", response_model=OrderResponse)
def cancel_order(
    order_no: str,
    payload: Optional[OrderCancelRequest] = None,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    reason = payload.reason if payload else ""
    order = OrderService(db).cancel(order_no, user_id=user_id, reason=reason)
    return OrderResponse(**order_to_dict(order))
