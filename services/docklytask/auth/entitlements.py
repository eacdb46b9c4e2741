"""Entitlement parsing for sign-in claims.

Collects the tenants a user is entitled to from the several shapes the
identity provider emits them in. Returns a flat, deduplicated set.
"""

import re
from collections.abc import Iterable
from typing import Any

from docklytask.auth.claims import NESTED_CLAIM_CONTAINERS, ClaimBag
from docklytask.logging_config import get_logger

logger = get_logger(__name__)

_DELIMITERS = re.compile(r"[;,]")

# /customers/ACME, /tenant/acme-gmbh/sub-team, customers/ACME
TENANT_GROUP_PATH = re.compile(
    r"^/?(?:customers|customer|tenants|tenant)/([^/]+)", re.IGNORECASE
)


def split_entitlement_value(value: Any) -> list[str]:
    """Normalize an entitlement claim value to a list of tenant strings.

    Accepts a native list or a string delimited by ';' or ','.
    """
    if isinstance(value, str):
        items: Iterable[Any] = _DELIMITERS.split(value)
    elif isinstance(value, list):
        items = value
    else:
        return []

    result = []
    for item in items:
        if not isinstance(item, str):
            continue
        item = item.strip()
        if item:
            result.append(item)
    return result


def entitlement_claim_tenants(bag: ClaimBag, names: Iterable[str]) -> set[str]:
    """Tenants from entitlement claims, top level and nested."""
    tenants: set[str] = set()
    for name in names:
        tenants.update(split_entitlement_value(bag.get(name)))
        for container in NESTED_CLAIM_CONTAINERS:
            for value in bag.nested_values(container, name):
                tenants.update(split_entitlement_value(value))
    return tenants


def entitlement_role_tenants(bag: ClaimBag, names: Iterable[str]) -> set[str]:
    """Tenants from client role grants like ``use_docklytask:acme-gmbh``."""
    names = [n for n in names if n]
    if not names:
        return set()

    pattern = re.compile(
        r"^(?:" + "|".join(re.escape(n) for n in names) + r")[:=](.+)$"
    )
    tenants: set[str] = set()
    for role in bag.resource_roles():
        match = pattern.match(role.strip())
        if match and match.group(1).strip():
            tenants.add(match.group(1).strip())
    return tenants


def group_path_tenants(groups: Iterable[str]) -> set[str]:
    """Tenants from group paths like ``/customers/ACME``."""
    tenants: set[str] = set()
    for group in groups:
        match = TENANT_GROUP_PATH.match(group.strip())
        if match and match.group(1).strip():
            tenants.add(match.group(1).strip())
    return tenants


def parse_entitlements(bag: ClaimBag, names: Iterable[str]) -> set[str]:
    """Collect every tenant the user is entitled to.

    Args:
        bag: Merged sign-in claims.
        names: Entitlement claim names (e.g. use_docklytask, manage_docklytask).

    Returns:
        Deduplicated set of tenant identifiers.
    """
    names = list(names)
    tenants = entitlement_claim_tenants(bag, names)
    tenants |= entitlement_role_tenants(bag, names)
    tenants |= group_path_tenants(bag.groups())

    if tenants:
        logger.debug("Parsed entitlements", tenants=sorted(tenants))
    return tenants
