"""
Token guard for admin routes (deposits, URL signing).

- API_TOKEN unset: admin routes answer 501 (minting coins is never open)
- API_TOKEN set: the X-API-Key header must match
- No query param token support (prevents log/referrer leakage)
"""

import hmac
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader


api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def verify_api_token(
    request: Request,
    api_key: Optional[str] = Depends(api_key_header),
) -> bool:
    token = request.app.state.settings.api_token
    if not token:
        raise HTTPException(
            status_code=status.HTTP_501_NOT_IMPLEMENTED,
            detail="Admin routes are disabled. Set API_TOKEN to enable them.",
        )

    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API token required. Provide via X-API-Key header.",
            headers={"WWW-Authenticate": "X-API-Key"},
        )

    if not hmac.compare_digest(api_key.encode("utf-8"), token.encode("utf-8")):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API token",
            headers={"WWW-Authenticate": "X-API-Key"},
        )

    return True
