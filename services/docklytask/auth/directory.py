"""Group directory client for the identity provider's admin API.

Fetches a user's group memberships with a service account when the sign-in
claims carry no usable group. Fails open: every failure (missing
configuration, non-2xx, timeout, bad JSON) yields an empty list.
"""

import re
from typing import Any

import httpx

from docklytask.config import OIDCConfig
from docklytask.logging_config import get_logger

logger = get_logger(__name__)

# https://sso.example.com/realms/acme  ->  https://sso.example.com/admin/realms/acme
# https://sso.example.com/auth/realms/acme  ->  https://sso.example.com/auth/admin/realms/acme
_ISSUER_REALM = re.compile(r"^(?P<base>.+?)/realms/(?P<realm>[^/]+)/?$")


def derive_admin_api_base(config: OIDCConfig) -> str | None:
    """Admin API base for the issuer's realm.

    An explicit admin_api_base wins; otherwise it is derived from issuer_url.
    """
    if config.admin_api_base:
        return config.admin_api_base.rstrip("/")

    match = _ISSUER_REALM.match(config.issuer_url.strip())
    if not match:
        return None
    return f"{match.group('base')}/admin/realms/{match.group('realm')}"


def token_endpoint(config: OIDCConfig) -> str:
    return config.issuer_url.rstrip("/") + "/protocol/openid-connect/token"


def _group_paths(payload: Any) -> list[str]:
    """Extract group paths from a groups listing, preserving order."""
    if not isinstance(payload, list):
        return []
    paths: list[str] = []
    for entry in payload:
        if not isinstance(entry, dict):
            continue
        path = entry.get("path")
        if not path and entry.get("name"):
            path = "/" + str(entry["name"])
        if isinstance(path, str) and path:
            paths.append(path)
    return paths


class GroupDirectoryClient:
    """Lists a user's groups through the admin REST API."""

    def __init__(self, client: httpx.AsyncClient, config: OIDCConfig) -> None:
        self._client = client
        self._config = config

    async def _service_token(self) -> str | None:
        """Obtain a service access token via the client_credentials grant."""
        client_id = self._config.service_client_id
        client_secret = self._config.service_client_secret
        if not self._config.issuer_url or not client_id or not client_secret:
            logger.info(
                "Directory lookup skipped: service credentials not configured",
                has_issuer=bool(self._config.issuer_url),
                has_client_id=bool(client_id),
            )
            return None

        url = token_endpoint(self._config)
        logger.debug("Requesting service token", url=url, client_id=client_id)
        try:
            resp = await self._client.post(
                url,
                data={
                    "grant_type": "client_credentials",
                    "client_id": client_id,
                    "client_secret": client_secret,
                },
                timeout=self._config.http_timeout_seconds,
            )
        except httpx.HTTPError as e:
            logger.warning("Service token request failed", url=url, error=str(e))
            return None

        body = _json_or_none(resp)
        if not resp.is_success:
            logger.warning(
                "Service token request rejected",
                url=url,
                status=resp.status_code,
                body=body,
            )
            return None

        token = body.get("access_token") if isinstance(body, dict) else None
        if not isinstance(token, str) or not token:
            logger.warning("Service token response has no access_token", url=url, body=body)
            return None
        return token

    async def list_user_groups(self, user_id: str | None) -> list[str]:
        """Return the group paths of a user, or [] on any failure."""
        if not user_id:
            return []

        admin_base = derive_admin_api_base(self._config)
        if admin_base is None:
            logger.info("Directory lookup skipped: cannot derive admin API base")
            return []

        service_token = await self._service_token()
        if service_token is None:
            return []

        url = f"{admin_base}/users/{user_id}/groups"
        headers = {"Authorization": f"Bearer {service_token}"}
        logger.debug("Listing user groups", url=url, headers=headers)
        try:
            resp = await self._client.get(
                url,
                headers=headers,
                timeout=self._config.http_timeout_seconds,
            )
        except httpx.HTTPError as e:
            logger.warning("Group lookup failed", url=url, error=str(e))
            return []

        body = _json_or_none(resp)
        if not resp.is_success:
            logger.warning("Group lookup rejected", url=url, status=resp.status_code, body=body)
            return []

        groups = _group_paths(body)
        logger.info("Directory groups fetched", user_id=user_id, groups=groups)
        return groups


def _json_or_none(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return None
