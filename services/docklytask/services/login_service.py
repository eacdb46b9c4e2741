"""Login service for OIDC sign-ins.

Handles the business logic of processing a sign-in callback:
1. Resolve the identity from the raw credential material (read-only)
2. Persist user and customer idempotently
3. Project everything onto the session payload

Sign-in never fails here. A missing email skips persistence; a database
failure is logged and the session is issued without a linked user.
"""

from dataclasses import dataclass

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from docklytask.auth.directory import GroupDirectoryClient
from docklytask.auth.identity import ResolvedIdentity, SignInEvent
from docklytask.auth.session_projector import SessionClaims, project_session
from docklytask.config import Settings
from docklytask.logging_config import get_logger
from docklytask.services.identity_repository import (
    IdentityPersistenceError,
    PersistedIdentity,
    upsert_identity,
)
from docklytask.services.identity_resolver import resolve_identity

logger = get_logger(__name__)


@dataclass
class LoginResult:
    """Result of processing a sign-in."""

    session: SessionClaims
    identity: ResolvedIdentity | None
    persisted: PersistedIdentity | None

    @property
    def linked(self) -> bool:
        return self.persisted is not None


async def process_login(
    db: AsyncSession,
    client: httpx.AsyncClient,
    event: SignInEvent,
    settings: Settings,
    directory: GroupDirectoryClient | None = None,
) -> LoginResult:
    """Resolve, persist and project one sign-in.

    Args:
        db: Database session.
        client: HTTP client for userinfo and directory calls.
        event: Raw credential material from the OIDC callback.
        settings: Application settings.
        directory: Optional directory client (created from settings if omitted).

    Returns:
        LoginResult with the session payload and, when available, the
        resolved and persisted identity.
    """
    bag, identity = await resolve_identity(event, client, settings, directory)

    persisted: PersistedIdentity | None = None
    if identity is None:
        logger.warning("Sign-in without email; session issued without linked user")
    else:
        try:
            persisted = await upsert_identity(db, identity, settings.tenancy.default_role)
        except IdentityPersistenceError:
            logger.error(
                "Identity persistence failed; session issued without linked user",
                email=identity.email,
                tenant=identity.tenant_id,
                exc_info=True,
            )

    session = project_session(bag, identity, event.access_token, persisted)

    logger.info(
        "Sign-in processed",
        email=session.user.email,
        tenant=session.user.tenant_id,
        linked=persisted is not None,
    )
    return LoginResult(session=session, identity=identity, persisted=persisted)
