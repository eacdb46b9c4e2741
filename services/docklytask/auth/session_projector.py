"""Projection of a resolved sign-in onto the long-lived session.

No business logic: copies the resolved identity and a fixed set of raw
claims into the shape the rest of the application reads.
"""

from dataclasses import asdict, dataclass, field
from typing import Any

from docklytask.auth.claims import ClaimBag
from docklytask.auth.identity import ResolvedIdentity
from docklytask.services.identity_repository import PersistedIdentity

# Raw claims carried into the session unchanged
PROJECTED_CLAIMS: tuple[str, ...] = (
    "realm_access",
    "resource_access",
    "groups",
    "extra",
    "attributes",
)


@dataclass
class SessionUser:
    email: str | None = None
    name: str | None = None
    image: str | None = None
    id: str | None = None  # users.id, absent when persistence was skipped
    customer_name: str | None = None
    tenant_id: str | None = None
    role: str | None = None


@dataclass
class SessionClaims:
    """Everything downstream handlers may read from a session."""

    access_token: str | None
    claims: dict[str, Any] = field(default_factory=dict)
    user: SessionUser = field(default_factory=SessionUser)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SessionClaims":
        return cls(
            access_token=data.get("access_token"),
            claims=data.get("claims") or {},
            user=SessionUser(**(data.get("user") or {})),
        )


def _user_id(persisted: PersistedIdentity | None) -> str | None:
    if persisted is None:
        return None
    return str(persisted.user_id)


def project_session(
    bag: ClaimBag,
    identity: ResolvedIdentity | None,
    access_token: str | None,
    persisted: PersistedIdentity | None = None,
) -> SessionClaims:
    """Build the session payload for a sign-in.

    Args:
        bag: Merged sign-in claims.
        identity: Resolved identity, or None when no email was found.
        access_token: Raw access token issued by the provider.
        persisted: Database link, or None when persistence was skipped or failed.
    """
    claims: dict[str, Any] = {key: bag.get(key) for key in PROJECTED_CLAIMS}
    claims["tenants"] = sorted(identity.tenants) if identity is not None else []
    if identity is not None and identity.groups:
        claims["groups"] = sorted(identity.groups)

    if identity is None:
        user = SessionUser(
            email=bag.get("email"),
            name=bag.get("name"),
            image=bag.get("picture"),
        )
    else:
        user = SessionUser(
            email=identity.email,
            name=identity.display_name,
            image=identity.avatar_url,
            id=_user_id(persisted),
            customer_name=(
                persisted.customer_name
                if persisted is not None and persisted.customer_name
                else identity.customer_name
            ),
            tenant_id=identity.tenant_id,
            role=(
                persisted.role
                if persisted is not None
                else (identity.role.value if identity.role is not None else None)
            ),
        )

    return SessionClaims(access_token=access_token, claims=claims, user=user)
