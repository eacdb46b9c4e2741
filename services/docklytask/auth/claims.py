"""Claim harvesting for OIDC sign-ins.

Decodes the ID and access token payloads, fetches the userinfo endpoint and
merges everything into a single ClaimBag. Precedence on key collision:
ID token < access token < userinfo < profile.

Token signatures are not checked here; the OIDC integration validates the
ID token before the pipeline runs.
"""

import base64
import binascii
import json
from collections.abc import Iterable, Mapping
from typing import Any

import httpx

from docklytask.auth.identity import SignInEvent
from docklytask.config import OIDCConfig
from docklytask.logging_config import get_logger

logger = get_logger(__name__)

# Sub-objects that may carry the same claims as the top level
NESTED_CLAIM_CONTAINERS: tuple[str, ...] = ("extra", "attributes")


class ClaimBag:
    """Merged claims from every credential source of one sign-in.

    Keeps the individual source layers (highest precedence first) so that
    lookups which must be tried "across sources" see nested objects that a
    later source would otherwise have shadowed in the merged view.
    """

    def __init__(self, *layers: Mapping[str, Any]) -> None:
        # layers are given lowest precedence first, like dict merging
        self._layers: list[dict[str, Any]] = [dict(layer) for layer in layers if layer]
        merged: dict[str, Any] = {}
        for layer in self._layers:
            merged.update(layer)
        self._merged = merged

    def __contains__(self, key: str) -> bool:
        return key in self._merged

    def __len__(self) -> int:
        return len(self._merged)

    def as_dict(self) -> dict[str, Any]:
        return dict(self._merged)

    def get(self, key: str, default: Any = None) -> Any:
        return self._merged.get(key, default)

    def nested(self, container: str) -> dict[str, Any]:
        """Return a nested claim object ('extra', 'attributes'), or {}."""
        value = self._merged.get(container)
        return value if isinstance(value, dict) else {}

    def nested_values(self, container: str, key: str) -> list[Any]:
        """Values of ``container[key]`` on every source layer, highest precedence first."""
        values = []
        for layer in reversed(self._layers):
            sub = layer.get(container)
            if isinstance(sub, dict) and key in sub:
                values.append(sub[key])
        return values

    def first_string(
        self,
        keys: Iterable[str],
        containers: Iterable[str] = NESTED_CLAIM_CONTAINERS,
    ) -> str | None:
        """First non-empty string found under any of ``keys``.

        Each key is tried on every source layer (highest precedence first),
        at the top level and then inside each nested container.
        """
        containers = tuple(containers)
        for key in keys:
            for layer in reversed(self._layers):
                candidates = [layer.get(key)]
                for container in containers:
                    sub = layer.get(container)
                    if isinstance(sub, dict):
                        candidates.append(sub.get(key))
                for candidate in candidates:
                    value = _as_string(candidate)
                    if value:
                        return value
        return None

    def string_list(self, key: str, source: Mapping[str, Any] | None = None) -> list[str]:
        """A list-of-strings claim; a lone string becomes a one-element list."""
        value = (source if source is not None else self._merged).get(key)
        if isinstance(value, str):
            return [value] if value.strip() else []
        if isinstance(value, list):
            return [v for v in value if isinstance(v, str) and v.strip()]
        return []

    def realm_roles(self) -> list[str]:
        realm_access = self._merged.get("realm_access")
        if not isinstance(realm_access, dict):
            return []
        return self.string_list("roles", realm_access)

    def resource_roles(self) -> list[str]:
        """All client roles across every entry of resource_access."""
        resource_access = self._merged.get("resource_access")
        if not isinstance(resource_access, dict):
            return []
        roles: list[str] = []
        for grant in resource_access.values():
            if isinstance(grant, dict):
                roles.extend(self.string_list("roles", grant))
        return roles

    def groups(self) -> list[str]:
        return self.string_list("groups")


def _as_string(value: Any) -> str | None:
    """Normalize a claim value to a trimmed string.

    Keycloak user attributes arrive as single-element lists.
    """
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, int | float) and not isinstance(value, bool):
        return str(value)
    if isinstance(value, list):
        for item in value:
            text = _as_string(item)
            if text:
                return text
    return None


def decode_token_payload(token: str | None) -> dict[str, Any] | None:
    """Decode the payload segment of a compact JWT without verification.

    Returns None when the token is missing or not a decodable JWT.
    """
    if not token:
        return None

    parts = token.split(".")
    if len(parts) != 3:
        logger.debug("Token is not a compact JWT", segments=len(parts))
        return None

    payload = parts[1]
    padded = payload + "=" * (-len(payload) % 4)
    try:
        decoded = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
    except (ValueError, binascii.Error, UnicodeError):
        logger.debug("Failed to decode token payload", exc_info=True)
        return None

    if not isinstance(decoded, dict):
        return None
    return decoded


def userinfo_endpoint(config: OIDCConfig) -> str:
    return config.issuer_url.rstrip("/") + "/protocol/openid-connect/userinfo"


async def fetch_userinfo(
    client: httpx.AsyncClient,
    config: OIDCConfig,
    access_token: str | None,
) -> dict[str, Any]:
    """Call the userinfo endpoint with the access token.

    Returns empty dict on failure (non-fatal).
    """
    if not access_token or not config.issuer_url:
        return {}

    url = userinfo_endpoint(config)
    try:
        resp = await client.get(
            url,
            headers={"Authorization": f"Bearer {access_token}"},
            timeout=config.http_timeout_seconds,
        )
    except httpx.HTTPError as e:
        logger.warning("Userinfo request failed", url=url, error=str(e))
        return {}

    if not resp.is_success:
        logger.warning("Userinfo request rejected", url=url, status=resp.status_code)
        return {}

    try:
        userinfo = resp.json()
    except ValueError:
        logger.warning("Userinfo response is not JSON", url=url)
        return {}

    if not isinstance(userinfo, dict):
        return {}

    logger.debug("Fetched userinfo", claims=sorted(userinfo.keys()))
    return userinfo


async def harvest_claims(
    event: SignInEvent,
    client: httpx.AsyncClient,
    config: OIDCConfig,
) -> ClaimBag:
    """Merge ID token, access token, userinfo and profile claims."""
    id_claims = decode_token_payload(event.id_token) or {}
    access_claims = decode_token_payload(event.access_token) or {}
    userinfo = await fetch_userinfo(client, config, event.access_token)

    bag = ClaimBag(id_claims, access_claims, userinfo, event.profile)
    logger.debug(
        "Harvested claims",
        id_token_claims=len(id_claims),
        access_token_claims=len(access_claims),
        userinfo_claims=len(userinfo),
        profile_claims=len(event.profile),
    )
    return bag
