import secrets
from typing import Optional
import structlog
from fastapi import Header, HTTPException, Request
from costsync.shared.core.config import get_settings

logger = structlog.get_logger()


async def require_admin_key(
    request: Request,
    x_admin_key: Optional[str] = Header(default=None, alias="X-Admin-Key")
) -> None:
    """
    Service-key guard for the operator API.

    ADMIN_API_KEY is mandatory in staging/production (enforced by Settings);
    local development runs open when it is unset.
    """
    settings = get_settings()
    if not settings.ADMIN_API_KEY:
        return

    if not x_admin_key or not secrets.compare_digest(x_admin_key, settings.ADMIN_API_KEY):
        client_host = request.client.host if request.client else None
        logger.warning("admin_auth_failed", path=request.url.path, ip=client_host)
        raise HTTPException(status_code=403, detail="Forbidden")
