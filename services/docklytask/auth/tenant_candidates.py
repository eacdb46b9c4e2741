"""Tenant candidate extraction.

Picks one tenant (and a customer display name) for a sign-in by walking a
fixed precedence chain. The first step that yields a candidate wins:

1. explicit customer / tenant claims
2. group paths (technical groups filtered out)
3. group paths from the directory API (only when 2 found nothing)
4. email domain, or a ``<user>_<domain>`` username
5. the only entitlement, when exactly one exists

The chain never raises. With no candidate at all the tenant falls back to
the configured default tenant and no customer is selected.
"""

import re
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from enum import StrEnum

from docklytask.auth.claims import ClaimBag
from docklytask.logging_config import get_logger

logger = get_logger(__name__)

CUSTOMER_ID_KEYS: tuple[str, ...] = ("customer_id", "customerId")
CUSTOMER_NAME_KEYS: tuple[str, ...] = (
    "customer_name",
    "customerName",
    "customer",
    "company",
    "organization",
)
TENANT_KEYS: tuple[str, ...] = ("tenant_id", "tenantId", "tenant")

# Groups that never describe a customer
TECHNICAL_GROUP_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"(^|/)realm-management(/|$)",
        r"(^|/)account(/|$)",
        r"^/?(roles?|groups?|users?|admins?)(/|$)",
        r"(^|/)default-roles-",
        r"uma_authorization",
        r"offline_access",
    )
)

_CONTAINER_SEGMENTS = frozenset({"customers", "customer", "tenants", "tenant", "clients", "client"})
_QUALIFIER_PREFIX = re.compile(r"^(?:customer|tenant|client)[\s:_=-]+", re.IGNORECASE)
_ROLE_SEGMENT = re.compile(r"^(?:roles?|groups?|users?|admins?)$", re.IGNORECASE)


class CandidateSource(StrEnum):
    """Where a tenant candidate came from."""

    EXPLICIT_CLAIM = "explicit_claim"
    ENTITLEMENT_ROLE = "entitlement_role"
    GROUP_PATH = "group_path"
    DIRECTORY_API = "directory_api"
    EMAIL_DOMAIN = "email_domain"
    SINGLE_ENTITLEMENT = "single_entitlement"


@dataclass
class TenantCandidate:
    """One possible (tenant, customer) answer and its origin."""

    source: CandidateSource
    tenant_id: str | None = None
    customer_name: str | None = None
    customer_id: str | None = None


@dataclass
class TenantSelection:
    """Result of the precedence chain."""

    tenant_id: str
    customer_name: str | None = None
    customer_id: str | None = None
    source: CandidateSource | None = None  # None: default fallback
    directory_groups: list[str] = field(default_factory=list)


DirectoryLookup = Callable[[], Awaitable[list[str]]]


def is_technical_group(group: str) -> bool:
    return any(p.search(group) for p in TECHNICAL_GROUP_PATTERNS)


def customer_from_group(group: str) -> str | None:
    """Derive a customer name from one group path.

    ``/customers/ACME`` gives ``ACME``; ``/customer-ACME`` gives ``ACME``;
    ``/partners/Gamma/admins`` gives ``Gamma``.
    """
    group = group.strip()
    if not group or is_technical_group(group):
        return None

    segments = [s.strip() for s in group.split("/") if s.strip()]
    if not segments:
        return None

    if segments[0].lower() in _CONTAINER_SEGMENTS:
        if len(segments) < 2:
            return None
        segment = segments[1]
    else:
        # trailing role subgroups (admins, users) name the role, not the customer
        named = [s for s in segments if not _ROLE_SEGMENT.match(s)]
        if not named:
            return None
        segment = named[-1]

    name = _QUALIFIER_PREFIX.sub("", segment).strip()
    return name or None


def candidate_from_claims(bag: ClaimBag) -> TenantCandidate | None:
    """Step 1: explicit customer or tenant fields on any claim source."""
    customer_id = bag.first_string(CUSTOMER_ID_KEYS)
    customer_name = bag.first_string(CUSTOMER_NAME_KEYS)
    tenant_id = bag.first_string(TENANT_KEYS)

    if not (customer_id or customer_name or tenant_id):
        return None

    return TenantCandidate(
        source=CandidateSource.EXPLICIT_CLAIM,
        tenant_id=tenant_id or customer_name,
        customer_name=customer_name,
        customer_id=customer_id,
    )


def candidate_from_groups(
    groups: Iterable[str],
    source: CandidateSource = CandidateSource.GROUP_PATH,
) -> TenantCandidate | None:
    """Steps 2 and 3: first group that names a customer."""
    for group in groups:
        name = customer_from_group(group)
        if name:
            return TenantCandidate(source=source, tenant_id=name, customer_name=name)
    return None


def _domain_label(domain: str) -> str | None:
    """Second-level label of a domain: ``mail.acme.de`` gives ``acme``."""
    labels = [label for label in domain.strip().lower().split(".") if label]
    if not labels:
        return None
    if len(labels) == 1:
        return labels[0]
    return labels[-2]


def candidate_from_email(bag: ClaimBag) -> TenantCandidate | None:
    """Step 4: email domain, or a ``<user>_<domain>`` username."""
    email = bag.first_string(("email",), containers=())
    if email and "@" in email:
        label = _domain_label(email.rsplit("@", 1)[1])
        if label:
            return TenantCandidate(source=CandidateSource.EMAIL_DOMAIN, tenant_id=label)
        return None

    username = bag.first_string(("preferred_username", "username"), containers=())
    if username and "_" in username:
        label = _domain_label(username.rsplit("_", 1)[1])
        if label:
            return TenantCandidate(source=CandidateSource.EMAIL_DOMAIN, tenant_id=label)
    return None


def candidate_from_entitlements(
    tenants: set[str],
    role_tenants: set[str] | None = None,
) -> TenantCandidate | None:
    """Step 5: the only entitlement, if there is exactly one."""
    if len(tenants) != 1:
        return None
    (tenant,) = tuple(tenants)
    source = (
        CandidateSource.ENTITLEMENT_ROLE
        if role_tenants and tenant in role_tenants
        else CandidateSource.SINGLE_ENTITLEMENT
    )
    return TenantCandidate(source=source, tenant_id=tenant)


def _select(candidate: TenantCandidate, default_tenant: str) -> TenantSelection:
    tenant_id = candidate.tenant_id or default_tenant
    customer_name = candidate.customer_name or candidate.tenant_id
    return TenantSelection(
        tenant_id=tenant_id,
        customer_name=customer_name,
        customer_id=candidate.customer_id,
        source=candidate.source,
    )


async def extract_tenant(
    bag: ClaimBag,
    tenants: set[str],
    groups: list[str],
    default_tenant: str,
    directory_lookup: DirectoryLookup | None = None,
    role_tenants: set[str] | None = None,
) -> TenantSelection:
    """Run the precedence chain and return the selected tenant.

    Args:
        bag: Merged sign-in claims.
        tenants: Entitlement set from parse_entitlements.
        groups: Groups known from the claims.
        default_tenant: Tenant used when nothing else matches.
        directory_lookup: Called only when no claim group names a customer.
        role_tenants: Subset of tenants that came from client role grants.
    """
    candidate = candidate_from_claims(bag)
    if candidate is not None:
        logger.debug("Tenant from explicit claim", tenant=candidate.tenant_id)
        return _select(candidate, default_tenant)

    candidate = candidate_from_groups(groups)
    if candidate is not None:
        logger.debug("Tenant from group path", tenant=candidate.tenant_id)
        return _select(candidate, default_tenant)

    directory_groups: list[str] = []
    if directory_lookup is not None:
        try:
            directory_groups = await directory_lookup()
        except Exception:
            # Lookups must fail open.
            logger.warning("Directory lookup raised", exc_info=True)
            directory_groups = []

        candidate = candidate_from_groups(directory_groups, CandidateSource.DIRECTORY_API)
        if candidate is not None:
            logger.debug("Tenant from directory group", tenant=candidate.tenant_id)
            selection = _select(candidate, default_tenant)
            selection.directory_groups = directory_groups
            return selection

    for candidate in (
        candidate_from_email(bag),
        candidate_from_entitlements(tenants, role_tenants),
    ):
        if candidate is not None:
            logger.debug(
                "Tenant from heuristic", tenant=candidate.tenant_id, source=candidate.source
            )
            selection = _select(candidate, default_tenant)
            selection.directory_groups = directory_groups
            return selection

    logger.info("No tenant signal in sign-in claims, using default", tenant=default_tenant)
    return TenantSelection(tenant_id=default_tenant, directory_groups=directory_groups)
