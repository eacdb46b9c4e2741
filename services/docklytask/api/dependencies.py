"""FastAPI dependencies for authentication and tenant access.

Sessions live in Redis and are presented either as the session cookie set
by the sign-in callback or as a Bearer token. Both resolve to the same
Session shape.
"""

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from docklytask.auth.sessions import Session, get_session
from docklytask.auth.tenant_access import has_tenant_access, request_tenant
from docklytask.config import settings
from docklytask.logging_config import get_logger

logger = get_logger(__name__)
security = HTTPBearer(auto_error=False)


def session_token_from_request(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None,
) -> str | None:
    if credentials is not None and credentials.credentials:
        return credentials.credentials
    return request.cookies.get(settings.auth.session_cookie_name)


async def get_current_session(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> Session:
    """Auth dependency: look up the Redis session, 401 when absent."""
    token = session_token_from_request(request, credentials)
    if token:
        session = await get_session(token)
        if session is not None:
            return session

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or expired session",
        headers={"WWW-Authenticate": "Bearer"},
    )


async def require_tenant_access(
    request: Request,
    session: Session = Depends(get_current_session),
) -> str:
    """Resolve the request tenant and enforce entitlement. Returns the tenant."""
    tenant = request_tenant(
        request.headers.get("host", ""),
        request.query_params,
        settings.tenancy,
    )
    if not has_tenant_access(
        session.claims, tenant, settings.tenancy, production=settings.is_production
    ):
        logger.info(
            "Tenant access denied",
            email=session.claims.user.email,
            tenant=tenant,
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"No access to tenant {tenant}",
        )
    return tenant
