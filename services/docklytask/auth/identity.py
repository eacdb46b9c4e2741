"""Identity types shared by the sign-in pipeline.

SignInEvent is what the OIDC integration hands over after a successful
callback. ResolvedIdentity is what the resolver produces from it, before
anything is written to the database.
"""

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class UserRole(StrEnum):
    """Roles persisted on users.role."""

    ADMIN = "ADMIN"
    MANAGER = "MANAGER"
    USER = "USER"
    VIEWER = "VIEWER"


@dataclass
class SignInEvent:
    """Raw credential material for one sign-in or token refresh."""

    id_token: str | None = None
    access_token: str | None = None
    # Claims the provider integration already validated (ID token payload)
    profile: dict[str, Any] = field(default_factory=dict)
    account: dict[str, Any] = field(default_factory=dict)


@dataclass
class ResolvedIdentity:
    """The (user, role, tenant, customer) tuple for one sign-in."""

    email: str
    tenant_id: str
    subject: str | None = None  # IDP user id, used for directory lookups
    display_name: str | None = None
    avatar_url: str | None = None
    customer_id: str | None = None  # pinned by an explicit claim
    customer_name: str | None = None
    # None means "keep whatever the stored user already has"
    role: UserRole | None = None
    groups: set[str] = field(default_factory=set)
    tenants: set[str] = field(default_factory=set)
