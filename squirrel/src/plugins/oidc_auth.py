from __future__ import annotations

import logging
from typing import Any
from urllib.parse import urlencode

import httpx

from squirrel.src.modules.errors import ExternalServiceException
from squirrel.src.modules.plugin_contracts import (
    AuthenticationFailureReason,
    AuthenticationPlugin,
    AuthenticationRequest,
    AuthenticationResult,
    AuthenticationStrategy,
    ConfigType,
    PluginConfigurationItem,
    PluginMetadata,
    PluginType,
)

logger = logging.getLogger(__name__)

PLUGIN_ID = "squirrel.wiki.plugins.oidc"
PROVIDER = "OpenIDConnect"
SERVICE_NAME = "OpenID Connect provider"
DISCOVERY_PATH = "/.well-known/openid-configuration"
HTTP_TIMEOUT = 10


class OidcAuthenticationStrategy(AuthenticationStrategy):
    """Authorization-code flow: discovery, login URL, then token and userinfo exchange."""

    provider = PROVIDER

    def __init__(self, config: dict[str, str], transport: httpx.AsyncBaseTransport | None = None):
        self.authority = (config.get("Authority") or "").rstrip("/")
        self.client_id = config.get("ClientId") or ""
        self.client_secret = config.get("ClientSecret") or ""
        self.scopes = config.get("Scopes") or "openid profile email"
        self.username_claim = config.get("UsernameClaim") or "preferred_username"
        self.groups_claim = config.get("GroupsClaim") or "groups"
        self.transport = transport
        self._discovery: dict[str, Any] | None = None

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=HTTP_TIMEOUT, transport=self.transport)

    async def discover(self) -> dict[str, Any]:
        if self._discovery is not None:
            return self._discovery
        url = self.authority + DISCOVERY_PATH
        try:
            async with self._client() as client:
                r = await client.get(url)
                r.raise_for_status()
                document = r.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise ExternalServiceException(SERVICE_NAME, f"discovery failed: {exc}").with_endpoint(url) from exc
        for key in ("authorization_endpoint", "token_endpoint"):
            if not document.get(key):
                raise ExternalServiceException(SERVICE_NAME, f"discovery document lacks {key}").with_endpoint(url)
        self._discovery = document
        logger.debug("Loaded OIDC discovery document from %s", url)
        return document

    async def get_login_url(self, redirect_uri: str, state: str) -> str:
        document = await self.discover()
        query = urlencode(
            {
                "response_type": "code",
                "client_id": self.client_id,
                "redirect_uri": redirect_uri,
                "scope": self.scopes,
                "state": state,
            }
        )
        endpoint = document["authorization_endpoint"]
        separator = "&" if "?" in endpoint else "?"
        return f"{endpoint}{separator}{query}"

    async def _exchange_code(self, document: dict[str, Any], code: str, redirect_uri: str | None) -> dict[str, Any]:
        endpoint = document["token_endpoint"]
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri or "",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }
        try:
            async with self._client() as client:
                r = await client.post(endpoint, data=data, headers={"Accept": "application/json"})
                r.raise_for_status()
                return r.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise ExternalServiceException(SERVICE_NAME, f"token exchange failed: {exc}").with_endpoint(endpoint) from exc

    async def _userinfo(self, document: dict[str, Any], access_token: str) -> dict[str, Any]:
        endpoint = document.get("userinfo_endpoint")
        if not endpoint:
            return {}
        try:
            async with self._client() as client:
                r = await client.get(endpoint, headers={"Authorization": f"Bearer {access_token}"})
                r.raise_for_status()
                return r.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise ExternalServiceException(SERVICE_NAME, f"userinfo request failed: {exc}").with_endpoint(endpoint) from exc

    async def authenticate(self, request: AuthenticationRequest) -> AuthenticationResult:
        if not request.code:
            return AuthenticationResult.failed(
                AuthenticationFailureReason.INVALID_CREDENTIALS, "Missing authorization code", PROVIDER
            )
        document = await self.discover()
        tokens = await self._exchange_code(document, request.code, request.redirect_uri)
        access_token = tokens.get("access_token")
        if not access_token:
            return AuthenticationResult.failed(
                AuthenticationFailureReason.EXTERNAL_PROVIDER_ERROR, "Provider returned no access token", PROVIDER
            )
        claims = await self._userinfo(document, access_token)
        subject = claims.get("sub")
        if not subject:
            return AuthenticationResult.failed(
                AuthenticationFailureReason.EXTERNAL_PROVIDER_ERROR, "Provider returned no subject claim", PROVIDER
            )
        email = claims.get("email") or ""
        username = claims.get(self.username_claim) or (email.split("@")[0] if email else subject)
        groups = claims.get(self.groups_claim) or []
        if isinstance(groups, str):
            groups = [groups]
        claims = dict(claims)
        claims["groups"] = list(groups)
        return AuthenticationResult(
            success=True,
            username=username,
            email=email,
            display_name=claims.get("name") or username,
            external_id=str(subject),
            provider=PROVIDER,
            claims=claims,
        )


class OidcAuthenticationPlugin(AuthenticationPlugin):
    login_button_icon = "bi-shield-lock"

    _metadata = PluginMetadata(
        id=PLUGIN_ID,
        name="OpenID Connect Authentication",
        description="Sign in through an OpenID Connect / OAuth 2.0 identity provider",
        version="1.0.0",
        author="Squirrel Wiki",
        type=PluginType.AUTHENTICATION,
        requires_configuration=True,
        configuration=[
            PluginConfigurationItem(
                key="Authority",
                display_name="OIDC Authority",
                description="Base URL of the provider (e.g. https://accounts.example.com)",
                type=ConfigType.URL,
                is_required=True,
                validation_pattern=r"^https?://\S+$",
                validation_error_message="Must be a valid URL starting with http:// or https://",
                display_order=1,
            ),
            PluginConfigurationItem(
                key="ClientId",
                display_name="Client ID",
                is_required=True,
                display_order=2,
            ),
            PluginConfigurationItem(
                key="ClientSecret",
                display_name="Client Secret",
                type=ConfigType.SECRET,
                is_required=True,
                is_secret=True,
                display_order=3,
            ),
            PluginConfigurationItem(
                key="Scopes",
                display_name="Scopes",
                description="Space separated scopes to request",
                default_value="openid profile email",
                display_order=4,
            ),
            PluginConfigurationItem(
                key="ButtonText",
                display_name="Login Button Text",
                default_value="Sign in with SSO",
                display_order=5,
            ),
            PluginConfigurationItem(
                key="UsernameClaim",
                display_name="Username Claim",
                default_value="preferred_username",
                display_order=6,
            ),
            PluginConfigurationItem(
                key="GroupsClaim",
                display_name="Groups Claim",
                default_value="groups",
                display_order=7,
            ),
            PluginConfigurationItem(
                key="AdminGroup",
                display_name="Admin Group",
                description="Members of this group are made administrators",
                default_value="squirrel-admins",
                display_order=8,
            ),
            PluginConfigurationItem(
                key="EditorGroup",
                display_name="Editor Group",
                description="Members of this group are made editors",
                default_value="squirrel-editors",
                display_order=9,
            ),
        ],
    )

    def __init__(self) -> None:
        super().__init__()
        self.transport: httpx.AsyncBaseTransport | None = None

    @property
    def metadata(self) -> PluginMetadata:
        return self._metadata

    @property
    def login_button_text(self) -> str:
        return self.get_config_value("ButtonText", "Sign in with SSO") or "Sign in with SSO"

    def role_flags(self, groups: list[str]) -> dict[str, bool]:
        admin_group = self.get_config_value("AdminGroup")
        editor_group = self.get_config_value("EditorGroup")
        is_admin = bool(admin_group) and admin_group in groups
        return {"is_admin": is_admin, "is_editor": is_admin or (bool(editor_group) and editor_group in groups)}

    def create_strategy(self, config: dict[str, str] | None = None) -> OidcAuthenticationStrategy:
        merged = {item.key: self.get_config_value(item.key) or "" for item in self.metadata.configuration}
        merged.update({k: v for k, v in (config or {}).items() if v})
        return OidcAuthenticationStrategy(merged, transport=self.transport)


def get_plugins():
    return [OidcAuthenticationPlugin()]
