"""Identity resolution for sign-ins.

Turns the raw credential material of one sign-in into a ResolvedIdentity:

1. Harvest and merge claims (ID token, access token, userinfo, profile)
2. Parse tenant entitlements
3. Select tenant and customer (directory API only when claims are not enough)
4. Decide the role (global admin marker forces ADMIN)

Read-only: nothing here writes to the database. The only outbound calls are
the userinfo fetch and, when needed, the directory group lookup.
"""

from functools import partial

import httpx

from docklytask.auth.claims import ClaimBag, harvest_claims
from docklytask.auth.directory import GroupDirectoryClient
from docklytask.auth.entitlements import entitlement_role_tenants, parse_entitlements
from docklytask.auth.identity import ResolvedIdentity, SignInEvent, UserRole
from docklytask.auth.tenant_candidates import extract_tenant
from docklytask.config import Settings
from docklytask.logging_config import get_logger

logger = get_logger(__name__)

AVATAR_KEYS = ("picture", "avatar_url", "avatar", "image")


def resolve_email(bag: ClaimBag) -> str | None:
    """The account email, from any claim source.

    A username that is itself an email address is accepted as well.
    """
    email = bag.first_string(("email",))
    if email:
        return email.lower()
    username = bag.first_string(("preferred_username", "upn"), containers=())
    if username and "@" in username:
        return username.lower()
    return None


def resolve_display_name(bag: ClaimBag) -> str | None:
    name = bag.first_string(("name", "display_name"), containers=())
    if name:
        return name
    given = bag.first_string(("given_name",), containers=())
    family = bag.first_string(("family_name",), containers=())
    full = " ".join(part for part in (given, family) if part)
    return full or bag.first_string(("preferred_username",), containers=())


def resolve_role(bag: ClaimBag, global_admin_role: str) -> UserRole | None:
    """ADMIN when the global admin marker is granted, otherwise undecided."""
    if global_admin_role in bag.realm_roles() or global_admin_role in bag.resource_roles():
        return UserRole.ADMIN
    return None


async def resolve_claims(
    bag: ClaimBag,
    settings: Settings,
    directory: GroupDirectoryClient | None = None,
) -> ResolvedIdentity | None:
    """Resolve an identity from already-harvested claims.

    Returns None when no email is present in any claim source.
    """
    email = resolve_email(bag)
    if not email:
        logger.warning("Sign-in claims carry no email; identity not resolved")
        return None

    subject = bag.first_string(("sub",), containers=())
    names = settings.tenancy.entitlement_names
    tenants = parse_entitlements(bag, names)
    role_tenants = entitlement_role_tenants(bag, names)
    groups = bag.groups()

    directory_lookup = None
    if directory is not None and subject:
        directory_lookup = partial(directory.list_user_groups, subject)

    selection = await extract_tenant(
        bag,
        tenants,
        groups,
        default_tenant=settings.tenancy.default_tenant,
        directory_lookup=directory_lookup,
        role_tenants=role_tenants,
    )

    identity = ResolvedIdentity(
        email=email,
        tenant_id=selection.tenant_id,
        subject=subject,
        display_name=resolve_display_name(bag),
        avatar_url=bag.first_string(AVATAR_KEYS),
        customer_id=selection.customer_id,
        customer_name=selection.customer_name,
        role=resolve_role(bag, settings.tenancy.global_admin_role),
        groups=set(groups) | set(selection.directory_groups),
        tenants=tenants,
    )

    logger.info(
        "Identity resolved",
        email=identity.email,
        tenant=identity.tenant_id,
        customer=identity.customer_name,
        tenant_source=selection.source,
        role=identity.role,
    )
    return identity


async def resolve_identity(
    event: SignInEvent,
    client: httpx.AsyncClient,
    settings: Settings,
    directory: GroupDirectoryClient | None = None,
) -> tuple[ClaimBag, ResolvedIdentity | None]:
    """Harvest claims for a sign-in and resolve them.

    Returns the merged ClaimBag alongside the identity so the caller can
    project raw claims into the session. A directory client is created from
    settings when none is given.
    """
    bag = await harvest_claims(event, client, settings.oidc)
    if directory is None:
        directory = GroupDirectoryClient(client, settings.oidc)
    identity = await resolve_claims(bag, settings, directory)
    return bag, identity
