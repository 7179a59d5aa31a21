"""
Shared FastAPI dependencies - service lookup, DB sessions, admin auth.
"""
import logging
from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from webhook_ingest.services.container import WebhookServices

logger = logging.getLogger(__name__)
bearer_scheme = HTTPBearer()


def get_services(request: Request) -> WebhookServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return services


async def get_db(
    services: WebhookServices = Depends(get_services),
) -> AsyncGenerator[AsyncSession, None]:
    async with services.session_factory() as session:
        yield session


# === AUTH DEPENDENCIES ===

async def get_current_admin(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
    services: WebhookServices = Depends(get_services),
) -> dict:
    """Dependency that requires a valid admin JWT Bearer token. Returns its claims."""
    import jwt as pyjwt

    secret = services.settings.admin_jwt_secret
    if not secret:
        logger.error("ADMIN_JWT_SECRET not set - admin endpoints are disabled")
        raise HTTPException(status_code=403, detail="Admin access not configured")

    try:
        payload = pyjwt.decode(credentials.credentials, secret, algorithms=["HS256"])
    except pyjwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except pyjwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    if not payload.get("is_admin"):
        raise HTTPException(status_code=403, detail="Admin access required")
    return payload
