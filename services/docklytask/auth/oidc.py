"""OIDC identity provider integration.

Uses authlib for OIDC discovery, token exchange, and JWKS-based ID token
validation. This is the trust boundary: once the ID token signature is
checked here, the sign-in pipeline decodes token payloads without
verifying them again.
"""

import secrets
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

import httpx
from authlib.jose import JsonWebKey
from authlib.jose import jwt as authlib_jwt
from authlib.jose.errors import JoseError

from docklytask.auth.identity import SignInEvent
from docklytask.config import OIDCConfig, settings
from docklytask.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class AuthorizationRequest:
    """Data needed to redirect the user to the IDP."""

    authorize_url: str
    state: str
    nonce: str


class OIDCProvider:
    """OIDC identity provider client using authlib."""

    def __init__(self, config: OIDCConfig) -> None:
        self._config = config
        self._discovery: dict[str, Any] | None = None
        self._jwks: Any | None = None

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._config.http_timeout_seconds)

    async def _ensure_discovery(self) -> dict[str, Any]:
        """Fetch and cache OIDC discovery document."""
        if self._discovery is not None:
            return self._discovery

        discovery_url = self._config.issuer_url.rstrip("/") + "/.well-known/openid-configuration"
        async with self._client() as client:
            resp = await client.get(discovery_url)
            resp.raise_for_status()
            self._discovery = resp.json()

        logger.info("OIDC discovery loaded", issuer=self._config.issuer_url)
        return self._discovery

    async def _ensure_jwks(self) -> Any:
        """Fetch and cache JWKS for token verification."""
        if self._jwks is not None:
            return self._jwks

        discovery = await self._ensure_discovery()
        async with self._client() as client:
            resp = await client.get(discovery["jwks_uri"])
            resp.raise_for_status()
            self._jwks = JsonWebKey.import_key_set(resp.json())

        return self._jwks

    async def build_authorization_request(self, callback_url: str, state: str) -> AuthorizationRequest:
        """Build the OIDC authorization URL."""
        discovery = await self._ensure_discovery()
        nonce = secrets.token_urlsafe(32)

        params = {
            "response_type": "code",
            "client_id": self._config.client_id,
            "redirect_uri": callback_url,
            "scope": " ".join(self._config.scopes),
            "state": state,
            "nonce": nonce,
        }
        authorize_url = f"{discovery['authorization_endpoint']}?{urlencode(params)}"
        return AuthorizationRequest(authorize_url=authorize_url, state=state, nonce=nonce)

    async def handle_callback(
        self,
        callback_url: str,
        code: str,
        nonce: str | None = None,
    ) -> SignInEvent:
        """Exchange the authorization code and validate the ID token.

        Raises:
            ValueError: the exchange failed or the ID token is not valid.
        """
        discovery = await self._ensure_discovery()

        token_data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": callback_url,
            "client_id": self._config.client_id,
            "client_secret": self._config.client_secret,
        }

        try:
            async with self._client() as client:
                resp = await client.post(discovery["token_endpoint"], data=token_data)
                resp.raise_for_status()
                token_response = resp.json()
        except httpx.HTTPError as e:
            raise ValueError(f"Code exchange failed: {e}") from e

        id_token_raw = token_response.get("id_token")
        if not id_token_raw:
            raise ValueError("No id_token in token response")

        expected_issuer = discovery.get("issuer", self._config.issuer_url)
        jwks = await self._ensure_jwks()
        try:
            claims = authlib_jwt.decode(
                id_token_raw,
                jwks,
                claims_options={
                    "iss": {"essential": True, "value": expected_issuer},
                    "aud": {"essential": True, "value": self._config.client_id},
                },
            )
            claims.validate()
        except JoseError as e:
            raise ValueError(f"ID token validation failed: {e}") from e

        if nonce is not None and claims.get("nonce") != nonce:
            raise ValueError("ID token nonce mismatch")

        profile = dict(claims)
        account = {
            "provider": "keycloak",
            "provider_account_id": profile.get("sub"),
            "expires_in": token_response.get("expires_in"),
            "scope": token_response.get("scope"),
        }

        logger.info("OIDC code exchange successful", subject=profile.get("sub"))
        return SignInEvent(
            id_token=id_token_raw,
            access_token=token_response.get("access_token"),
            profile=profile,
            account=account,
        )


_provider: OIDCProvider | None = None


def get_oidc_provider() -> OIDCProvider:
    """Return the process-wide provider, created on first use."""
    global _provider  # noqa: PLW0603
    if _provider is None:
        _provider = OIDCProvider(settings.oidc)
    return _provider
