"""Authentication router.

Browser sign-in goes through a single OIDC round trip:
/login -> IDP -> /callback -> session cookie -> redirect into the app.

Consumers:
    Web UI:
        GET  /api/auth/login      - start sign-in (302 to the IDP)
        GET  /api/auth/callback   - IDP redirect target; issues the session
        GET  /api/auth/session    - current session payload
        POST /api/auth/logout     - revoke current session
        GET  /api/tenant          - tenant the request addresses, access-checked
"""

from urllib.parse import urlsplit

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from docklytask.api.dependencies import get_current_session, require_tenant_access
from docklytask.auth.auth_state import (
    AuthState,
    consume_auth_state,
    generate_state,
    store_auth_state,
)
from docklytask.auth.oidc import get_oidc_provider
from docklytask.auth.sessions import Session, create_session, revoke_session
from docklytask.config import settings
from docklytask.db.session import get_db
from docklytask.logging_config import get_logger
from docklytask.services.login_service import process_login

router = APIRouter(tags=["auth"])
logger = get_logger(__name__)

# Paths that must never be used as a post-login destination
INVALID_REDIRECT_PREFIXES = ("/favicon.ico", "/_next", "/api/auth")


# --- Pydantic models ---


class SessionUserResponse(BaseModel):
    email: str | None = None
    name: str | None = None
    image: str | None = None
    id: str | None = None
    customer_name: str | None = None
    tenant_id: str | None = None
    role: str | None = None


class SessionResponse(BaseModel):
    user: SessionUserResponse
    tenants: list[str]
    groups: list[str]
    expires_at: str


class TenantResponse(BaseModel):
    tenant: str


# --- Endpoints ---


@router.get("/auth/login")
async def login(
    callback_url: str = Query("/", description="Where to go after sign-in"),
) -> RedirectResponse:
    """Start the OIDC sign-in by redirecting to the IDP."""
    provider = get_oidc_provider()
    state = generate_state()

    try:
        auth_request = await provider.build_authorization_request(
            callback_url=_callback_url(), state=state
        )
    except httpx.HTTPError as e:
        logger.error("OIDC discovery failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Identity provider unavailable",
        ) from e

    await store_auth_state(
        AuthState(
            idp_state=state,
            nonce=auth_request.nonce,
            callback_url=sanitize_redirect(callback_url, settings.auth.callback_base_url),
        )
    )

    logger.info("Sign-in started")
    return RedirectResponse(url=auth_request.authorize_url, status_code=302)


@router.get("/auth/callback")
async def callback(
    code: str = Query(..., description="Authorization code from IDP"),
    state: str = Query(..., description="State parameter from IDP"),
    db: AsyncSession = Depends(get_db),
) -> RedirectResponse:
    """Handle the OIDC IDP callback and issue the session."""
    auth_state = await consume_auth_state(state)
    if auth_state is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid or expired auth state",
        )

    provider = get_oidc_provider()
    try:
        event = await provider.handle_callback(
            callback_url=_callback_url(),
            code=code,
            nonce=auth_state.nonce,
        )
    except ValueError as e:
        logger.error("OIDC callback failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Authentication failed: {e}",
        ) from e

    async with httpx.AsyncClient(timeout=settings.oidc.http_timeout_seconds) as client:
        result = await process_login(db, client, event, settings)

    session = await create_session(result.session)

    response = RedirectResponse(url=auth_state.callback_url, status_code=302)
    response.set_cookie(
        key=settings.auth.session_cookie_name,
        value=session.token,
        max_age=settings.auth.session_ttl_hours * 3600,
        httponly=True,
        secure=settings.auth.secure_cookies,
        samesite="lax",
        path="/",
    )

    logger.info(
        "Callback: redirecting to app",
        email=result.session.user.email,
        tenant=result.session.user.tenant_id,
    )
    return response


@router.get("/auth/session", response_model=SessionResponse)
async def current_session(session: Session = Depends(get_current_session)) -> SessionResponse:
    """Return the current session without the access token."""
    claims = session.claims
    return SessionResponse(
        user=SessionUserResponse(**vars(claims.user)),
        tenants=claims.claims.get("tenants") or [],
        groups=claims.claims.get("groups") or [],
        expires_at=session.expires_at,
    )


@router.post("/auth/logout")
async def logout(session: Session = Depends(get_current_session)) -> JSONResponse:
    """Revoke the current session and clear the cookie."""
    await revoke_session(session.token)
    logger.info("Session revoked via logout", email=session.claims.user.email)

    response = JSONResponse(content={"status": "logged_out"})
    response.delete_cookie(settings.auth.session_cookie_name, path="/")
    return response


@router.get("/tenant", response_model=TenantResponse)
async def current_tenant(tenant: str = Depends(require_tenant_access)) -> TenantResponse:
    """Tenant addressed by this request, once access is confirmed."""
    return TenantResponse(tenant=tenant)


# --- Helpers ---


def _callback_url() -> str:
    return f"{settings.auth.callback_base_url}{settings.api_prefix}/auth/callback"


def sanitize_redirect(url: str, base_url: str) -> str:
    """Restrict post-login redirects to this application.

    Relative paths are kept unless they point at framework or auth
    internals; absolute URLs are kept only on the application's own origin.
    Anything else lands on the root.
    """
    if not url:
        return "/"

    if url.startswith("/") and not url.startswith("//"):
        if url.startswith(INVALID_REDIRECT_PREFIXES):
            return "/"
        return url

    target = urlsplit(url)
    base = urlsplit(base_url)
    if target.scheme and target.netloc and (target.scheme, target.netloc) == (
        base.scheme,
        base.netloc,
    ):
        if target.path.startswith(INVALID_REDIRECT_PREFIXES):
            return "/"
        return url

    return "/"
