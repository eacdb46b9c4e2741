"""Redis-backed session management.

The projected sign-in (SessionClaims) is stored under an opaque session
token. Clients present the token as a cookie or Bearer header; the server
validates by looking it up in Redis, enabling immediate revocation.
"""

import json
import secrets
from dataclasses import dataclass, field
from datetime import timedelta

from docklytask.auth.session_projector import SessionClaims
from docklytask.config import settings
from docklytask.db.models import utc_now
from docklytask.logging_config import get_logger
from docklytask.redis.client import get_redis_client

logger = get_logger(__name__)

SESSION_PREFIX = "dt:session:"


def _session_ttl() -> int:
    """Session TTL in seconds from config."""
    return settings.auth.session_ttl_hours * 3600


@dataclass
class Session:
    """Server-side session state stored in Redis."""

    claims: SessionClaims
    created_at: str  # ISO 8601
    expires_at: str  # ISO 8601

    # The token is the Redis key, never part of the stored value
    token: str = field(default="", repr=False)

    def to_json(self) -> str:
        return json.dumps(
            {
                "claims": self.claims.to_dict(),
                "created_at": self.created_at,
                "expires_at": self.expires_at,
            }
        )


def generate_session_token() -> str:
    """Generate a cryptographically random session token."""
    return secrets.token_urlsafe(32)


async def create_session(claims: SessionClaims) -> Session:
    """Store a projected sign-in in Redis. Returns the Session with its token."""
    redis = get_redis_client()
    token = generate_session_token()
    ttl = _session_ttl()
    now = utc_now()

    session = Session(
        claims=claims,
        created_at=now.isoformat(),
        expires_at=(now + timedelta(seconds=ttl)).isoformat(),
        token=token,
    )
    await redis.set(SESSION_PREFIX + token, session.to_json(), ex=ttl)

    logger.info(
        "Session created",
        email=claims.user.email,
        tenant=claims.user.tenant_id,
        linked=claims.user.id is not None,
    )
    return session


async def get_session(token: str) -> Session | None:
    """Look up a session by token. Returns None if not found or expired."""
    redis = get_redis_client()
    data = await redis.get(SESSION_PREFIX + token)
    if data is None:
        return None

    parsed = json.loads(data)
    return Session(
        claims=SessionClaims.from_dict(parsed["claims"]),
        created_at=parsed["created_at"],
        expires_at=parsed["expires_at"],
        token=token,
    )


async def revoke_session(token: str) -> bool:
    """Revoke a session by deleting it from Redis.

    Returns True if the session existed, False if it was already gone.
    """
    redis = get_redis_client()
    deleted = await redis.delete(SESSION_PREFIX + token)
    if deleted:
        logger.info("Session revoked")
    return bool(deleted)
