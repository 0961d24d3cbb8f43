"""
Rate Limiter — fixed-window request counters kept in the TTL store.
Shared across processes when the store is Redis-backed.
"""
from fastapi import Request, HTTPException

from ledger.utils.ttl_store import get_ttl_store


def rate_limit(requests: int, window: int, scope: str = "default"):
    """
    Dependency for rate limiting per client IP.
    Example: Depends(rate_limit(requests=5, window=60, scope="orders"))
    """
    def limiter(request: Request):
        ip = request.client.host if request.client else "unknown"
        count = get_ttl_store().incr(f"ratelimit:{scope}:{ip}", window)

        if count > requests:
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded. Try again in up to {window} seconds."
            )
        return True

    return limiter
