"""
Multi-Tenant Middleware
Resolves the business (tenant) id for each request.
"""
import logging
from typing import Optional

import jwt
from fastapi import HTTPException, Request, status
from starlette.middleware.base import BaseHTTPMiddleware

from smartcomm.core.config import get_settings

logger = logging.getLogger(__name__)

def tenant_from_token(token: str, secret: Optional[str] = None) -> Optional[str]:
    """
    Extract the business id from a JWT.

    The signature is verified when a secret is configured.
    """
    if secret:
        payload = jwt.decode(token, secret, algorithms=["HS256"], options={"verify_aud": False})
    else:
        payload = jwt.decode(token, options={"verify_signature": False})

    metadata = payload.get("user_metadata") or {}
    return (
        payload.get("business_id")
        or payload.get("tenant_id")
        or metadata.get("business_id")
        or metadata.get("tenant_id")
    )


class TenantMiddleware(BaseHTTPMiddleware):
    """
    Attaches request.state.tenant_id from the bearer token.

    Token signatures are verified with JWT_SECRET. Without a secret,
    tokens are decoded unverified outside production and ignored in
    production. Endpoints enforce presence via get_current_tenant.
    """

    PUBLIC_PATHS = ["/", "/health", "/docs", "/openapi.json", "/redoc"]

    async def dispatch(self, request: Request, call_next):
        request.state.tenant_id = None

        if request.url.path in self.PUBLIC_PATHS or request.url.path.startswith("/api/v1/cron"):
            return await call_next(request)

        auth_header = request.headers.get("Authorization")
        if auth_header and auth_header.startswith("Bearer "):
            token = auth_header.split(" ", 1)[1]
            settings = get_settings()
            if settings.jwt_secret or settings.environment != "production":
                try:
                    request.state.tenant_id = tenant_from_token(token, settings.jwt_secret)
                except jwt.InvalidTokenError as e:
                    logger.debug(f"Ignoring invalid bearer token: {e}")
            else:
                logger.warning("JWT_SECRET is not set, ignoring bearer token")

        return await call_next(request)


def get_current_tenant(request: Request) -> str:
    """
    Dependency returning the current business id.

    Raises:
        HTTPException: 401 when the request carries no tenant
    """
    tenant_id = getattr(request.state, "tenant_id", None)
    if not tenant_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return tenant_id
