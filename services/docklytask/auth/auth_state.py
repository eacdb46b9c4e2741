"""Redis-backed ephemeral auth state for the OIDC round trip.

auth_state is created in /login and consumed in /callback (TTL 5 minutes).
Consumption is an atomic GET+DELETE so a state can be used only once.
"""

import json
import secrets
from dataclasses import asdict, dataclass

from docklytask.logging_config import get_logger
from docklytask.redis.client import get_redis_client

logger = get_logger(__name__)

AUTH_STATE_PREFIX = "dt:auth_state:"
AUTH_STATE_TTL = 300  # 5 minutes


@dataclass
class AuthState:
    """State stored between /login and /callback."""

    idp_state: str
    nonce: str
    # Where the browser goes after sign-in (already sanitized)
    callback_url: str = "/"


def generate_state() -> str:
    """Generate a cryptographically random state parameter."""
    return secrets.token_urlsafe(32)


async def store_auth_state(state: AuthState) -> str:
    """Store auth state in Redis, keyed by IDP-facing state."""
    redis = get_redis_client()
    key = AUTH_STATE_PREFIX + state.idp_state
    await redis.set(key, json.dumps(asdict(state)), ex=AUTH_STATE_TTL)
    logger.debug("Stored auth state", idp_state=state.idp_state)
    return state.idp_state


async def consume_auth_state(idp_state: str) -> AuthState | None:
    """Consume (get + delete) auth state. Returns None if not found or expired."""
    redis = get_redis_client()
    key = AUTH_STATE_PREFIX + idp_state

    async with redis.pipeline(transaction=True) as pipe:
        pipe.get(key)
        pipe.delete(key)
        results = await pipe.execute()

    data = results[0]
    if data is None:
        logger.warning("Auth state not found or expired", idp_state=idp_state)
        return None

    return AuthState(**json.loads(data))
