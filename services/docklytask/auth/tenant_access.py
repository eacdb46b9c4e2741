"""Request tenant resolution and tenant access checks.

Every request belongs to a tenant, taken from the subdomain
(``acme.app.example.com`` gives ``acme``), the ``tenant`` query parameter, or
a fixed configured value. A session may enter a tenant when it holds the
global admin role, is entitled to the tenant, or was resolved into it.
"""

from collections.abc import Mapping

from docklytask.auth.session_projector import SessionClaims
from docklytask.config import TenancyConfig, TenantSource


def request_tenant(host: str, query_params: Mapping[str, str], config: TenancyConfig) -> str:
    """Determine the tenant an incoming request addresses."""
    if config.request_tenant_source == TenantSource.FIXED:
        return config.fixed_tenant

    if config.request_tenant_source == TenantSource.QUERY:
        return query_params.get("tenant") or config.fixed_tenant

    hostname = host.split(":", 1)[0]
    parts = hostname.split(".")
    if len(parts) > 2:
        return parts[0]
    return config.fixed_tenant


def _realm_roles(claims: SessionClaims) -> list[str]:
    realm_access = claims.claims.get("realm_access")
    if not isinstance(realm_access, dict):
        return []
    roles = realm_access.get("roles")
    return [r for r in roles if isinstance(r, str)] if isinstance(roles, list) else []


def has_tenant_access(
    claims: SessionClaims,
    tenant: str,
    config: TenancyConfig,
    production: bool = True,
) -> bool:
    """Check whether a session may access a tenant."""
    if not production and tenant in config.open_tenants:
        return True

    if config.global_admin_role in _realm_roles(claims):
        return True

    wanted = tenant.lower()
    if claims.user.tenant_id and claims.user.tenant_id.lower() == wanted:
        return True

    entitled = claims.claims.get("tenants") or []
    return any(isinstance(t, str) and t.lower() == wanted for t in entitled)
