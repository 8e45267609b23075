"""
Authentication — API-key auth and shop identification.

- All API routes: Authorization: Bearer <API_KEY>
- The shop is identified by the X-Shop-Domain header (e.g. my-store.myshopify.com)

In development with no API_KEY set, auth is skipped for local dev.
"""

import hmac
import logging
import re
from typing import Optional
from fastapi import Depends, Header, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.config import get_settings

logger = logging.getLogger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)

SHOP_DOMAIN_PATTERN = re.compile(r"^[a-z0-9][a-z0-9\-]*\.myshopify\.com$")


async def require_auth(
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
) -> str:
    """Require the API key. Returns the key (or "dev-no-auth" in unconfigured dev)."""
    settings = get_settings()
    api_key = settings.api_key

    # Dev convenience: skip auth when no key is configured
    if not api_key:
        if settings.is_production:
            raise HTTPException(
                status_code=500,
                detail="Server misconfiguration: API_KEY must be set in production.",
            )
        return "dev-no-auth"

    if not credentials:
        raise HTTPException(
            status_code=401,
            detail="Missing authorization. Include header: Authorization: Bearer <API_KEY>",
        )

    if not hmac.compare_digest(credentials.credentials.encode(), api_key.encode()):
        raise HTTPException(status_code=401, detail="Invalid API key.")
    return credentials.credentials


async def get_shop(x_shop_domain: Optional[str] = Header(None)) -> str:
    """The shop the request acts for, normalized to lower case."""
    if not x_shop_domain:
        raise HTTPException(status_code=400, detail="Missing X-Shop-Domain header.")
    shop = x_shop_domain.strip().lower()
    if not SHOP_DOMAIN_PATTERN.match(shop):
        raise HTTPException(status_code=400, detail=f"Invalid shop domain: {x_shop_domain!r}")
    return shop

