"""
Shared route dependencies — caller identity, admin guard, client metadata.
"""
import hmac
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from ledger.config import get_settings
from ledger.database import get_db
from ledger.services.tier_service import TierCatalog


def current_user_id(user_id: int = Header(..., alias="user-id", gt=0)) -> int:
    """Authenticated user id, injected by the upstream auth layer."""
    return user_id


def require_admin(admin_token: Optional[str] = Header(None, alias="X-Admin-Token")) -> str:
    expected = get_settings().ADMIN_TOKEN
    if not expected or not admin_token or not hmac.compare_digest(
        expected.encode("utf-8"), admin_token.encode("utf-8")
    ):
        raise HTTPException(status_code=403, detail="Admin token required")
    return "admin"


def client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def user_agent(request: Request) -> str:
    return request.headers.get("user-agent", "")[:256]


def tier_catalog(db: Session = Depends(get_db)) -> TierCatalog:
    return TierCatalog.load(db)
