"""httpx-based OAuth provider client.

One class serves every standard authorization-code provider. Endpoints,
scopes and quirks live in OAuthProviderConfig; GOOGLE and GITHUB are the
built-in configurations.

Failure classification:
- Token endpoint error code in the config's invalid_grant_codes -> NON_RECOVERABLE
- Token response without an access_token -> NON_RECOVERABLE
- Response body of the wrong shape -> RECOVERABLE
- Anything else (timeouts, connection errors, 5xx, 429, other 4xx) -> RECOVERABLE
"""

import time
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlencode

import httpx
import structlog

from oauth_broker.providers.base import (
    FailureKind,
    OAuthProviderClient,
    ProviderResult,
    TokenSet,
    UserInfo,
)

logger = structlog.get_logger()

# HTTP client timeout for token exchange, refresh and userinfo
DEFAULT_HTTP_TIMEOUT = 10.0

MALFORMED_RESPONSE = "Malformed provider response"


def _parse_expires_in(value: Any) -> int | None:
    """Lifetime in seconds from a token response.

    Raises:
        TypeError: If the value is not a number or numeric string.
        ValueError: If the string is not an integer.
        OverflowError: If the number is infinite.
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise TypeError("expires_in must be numeric")
    return int(value)


def _parse_scope(value: Any, separator: str) -> str | None:
    """Granted scopes as a space-separated string.

    Raises:
        TypeError: If the value is not a string.
    """
    if not value:
        return None
    if not isinstance(value, str):
        raise TypeError("scope must be a string")
    if separator != " ":
        value = " ".join(s for s in value.split(separator) if s)
    return value


def _optional_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise TypeError("expected a string")
    return value


@dataclass(frozen=True)
class OAuthProviderConfig:
    """Endpoint and scope configuration for an OAuth provider.

    Attributes:
        name: Registry key.
        authorization_url: Provider's authorization endpoint.
        token_url: Provider's token exchange endpoint.
        userinfo_url: Provider's userinfo endpoint.
        scopes: OAuth scopes to request.
        required_scopes: Scopes that must be granted.
        extra_auth_params: Additional query parameters for the consent URL.
        scope_separator: Separator the token endpoint uses in its scope field.
        invalid_grant_codes: Token endpoint error codes meaning the grant is dead.
        emails_url: Secondary endpoint for the primary email, when the
            userinfo response may omit it.
        supports_pkce: Whether to send a PKCE challenge.
    """

    name: str
    authorization_url: str
    token_url: str
    userinfo_url: str
    scopes: tuple[str, ...]
    required_scopes: tuple[str, ...] = ()
    extra_auth_params: dict[str, str] = field(default_factory=dict)
    scope_separator: str = " "
    invalid_grant_codes: frozenset[str] = frozenset({"invalid_grant"})
    emails_url: str | None = None
    supports_pkce: bool = True


GOOGLE = OAuthProviderConfig(  # nosec B106 - token_url is an endpoint, not a password
    name="google",
    authorization_url="https://accounts.google.com/o/oauth2/v2/auth",
    token_url="https://oauth2.googleapis.com/token",
    userinfo_url="https://www.googleapis.com/oauth2/v2/userinfo",
    scopes=(
        "https://www.googleapis.com/auth/userinfo.email",
        "https://www.googleapis.com/auth/userinfo.profile",
        "https://www.googleapis.com/auth/calendar",
    ),
    required_scopes=(
        "https://www.googleapis.com/auth/userinfo.email",
        "https://www.googleapis.com/auth/calendar",
    ),
    # offline + consent so Google always returns a refresh token
    extra_auth_params={"access_type": "offline", "prompt": "consent"},
)

GITHUB = OAuthProviderConfig(  # nosec B106 - token_url is an endpoint, not a password
    name="github",
    authorization_url="https://github.com/login/oauth/authorize",
    token_url="https://github.com/login/oauth/access_token",
    userinfo_url="https://api.github.com/user",
    scopes=("read:user", "user:email"),
    required_scopes=("user:email",),
    scope_separator=",",
    # GitHub's names for a dead code or refresh token
    invalid_grant_codes=frozenset(
        {"invalid_grant", "bad_verification_code", "bad_refresh_token"}
    ),
    emails_url="https://api.github.com/user/emails",
)

BUILTIN_PROVIDERS: dict[str, OAuthProviderConfig] = {
    GOOGLE.name: GOOGLE,
    GITHUB.name: GITHUB,
}


class HttpOAuthProvider(OAuthProviderClient):
    """OAuth provider client over httpx.

    Args:
        config: Provider endpoints and scopes.
        client_id: OAuth client id.
        client_secret: OAuth client secret.
        redirect_uri: Callback URL registered with the provider.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (httpx.MockTransport in tests).
    """

    def __init__(
        self,
        config: OAuthProviderConfig,
        *,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self.client_id = client_id
        self._client_secret = client_secret
        self.redirect_uri = redirect_uri
        self._timeout = timeout
        self._transport = transport
        self.scopes = list(config.scopes)
        self.required_scopes = list(config.required_scopes)
        self.supports_pkce = config.supports_pkce

    @property
    def name(self) -> str:
        return self.config.name

    def get_authorization_url(
        self,
        state: str,
        code_challenge: str | None = None,
    ) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.config.scopes),
            **self.config.extra_auth_params,
            "state": state,
        }
        if code_challenge:
            params["code_challenge"] = code_challenge
            params["code_challenge_method"] = "S256"
        return f"{self.config.authorization_url}?{urlencode(params)}"

    async def exchange_code(
        self,
        code: str,
        code_verifier: str | None = None,
    ) -> ProviderResult[TokenSet]:
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_uri,
            "client_id": self.client_id,
            "client_secret": self._client_secret,
        }
        if code_verifier:
            data["code_verifier"] = code_verifier
        return await self._token_request(data, operation="exchange_code")

    async def refresh_token(self, refresh_token: str) -> ProviderResult[TokenSet]:
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.client_id,
            "client_secret": self._client_secret,
        }
        return await self._token_request(data, operation="refresh_token")

    async def get_user_info(self, access_token: str) -> ProviderResult[UserInfo]:
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
        }
        try:
            async with self._client() as client:
                resp = await client.get(self.config.userinfo_url, headers=headers)
                if resp.status_code != 200:
                    return self._http_failure("get_user_info", resp)
                data = resp.json()
                if not isinstance(data, dict):
                    return self._malformed_response("get_user_info")

                email = data.get("email")
                if not isinstance(email, str):
                    email = None
                verified = data.get("verified_email", data.get("email_verified"))
                if not email and self.config.emails_url:
                    email, verified = await self._fetch_primary_email(
                        client, self.config.emails_url, headers
                    )
        except (httpx.HTTPError, ValueError) as e:
            return self._transport_failure("get_user_info", e)

        if not email:
            logger.warning("oauth_userinfo_missing_email", provider=self.name)
            return ProviderResult.fail(
                FailureKind.NON_RECOVERABLE, "Provider did not return an email"
            )

        return ProviderResult.success(
            UserInfo(
                id=str(data.get("id") or data.get("sub") or ""),
                email=email,
                name=data.get("name") if isinstance(data.get("name"), str) else None,
                picture=self._picture(data),
                email_verified=verified if isinstance(verified, bool) else None,
            )
        )

    @staticmethod
    def _picture(data: dict[str, Any]) -> str | None:
        picture = data.get("picture") or data.get("avatar_url")
        return picture if isinstance(picture, str) else None

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    async def _fetch_primary_email(
        self,
        client: httpx.AsyncClient,
        url: str,
        headers: dict[str, str],
    ) -> tuple[str | None, bool | None]:
        """Look up the primary email on providers that keep it separately."""
        resp = await client.get(url, headers=headers)
        if resp.status_code != 200:
            return None, None
        entries = resp.json()
        if not isinstance(entries, list):
            return None, None
        for entry in entries:
            if isinstance(entry, dict) and entry.get("primary"):
                return entry.get("email"), entry.get("verified")
        return None, None

    async def _token_request(
        self,
        data: dict[str, str],
        *,
        operation: str,
    ) -> ProviderResult[TokenSet]:
        logger.info("oauth_token_request_start", provider=self.name, operation=operation)
        start_time = time.monotonic()

        try:
            async with self._client() as client:
                resp = await client.post(
                    self.config.token_url,
                    data=data,
                    headers={"Accept": "application/json"},
                )
        except httpx.HTTPError as e:
            return self._transport_failure(operation, e)

        try:
            body = resp.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            if resp.status_code != 200:
                return self._http_failure(operation, resp)
            return self._malformed_response(operation)

        raw_error = body.get("error")
        error_code = raw_error if isinstance(raw_error, str) else None
        if resp.status_code != 200 or raw_error:
            if error_code in self.config.invalid_grant_codes:
                logger.warning(
                    "oauth_token_request_invalid_grant",
                    provider=self.name,
                    operation=operation,
                    status_code=resp.status_code,
                )
                return ProviderResult.fail(
                    FailureKind.NON_RECOVERABLE,
                    "invalid_grant",
                    code="invalid_grant",
                )
            return self._http_failure(operation, resp, error_code)

        access_token = body.get("access_token")
        if not access_token:
            logger.warning(
                "oauth_token_response_missing_access_token",
                provider=self.name,
                operation=operation,
            )
            return ProviderResult.fail(
                FailureKind.NON_RECOVERABLE,
                "Token response did not include an access token",
                code="invalid_grant",
            )

        try:
            if not isinstance(access_token, str):
                raise TypeError("access_token must be a string")
            expires_in = _parse_expires_in(body.get("expires_in"))
            scope = _parse_scope(body.get("scope"), self.config.scope_separator)
            refresh_token = _optional_str(body.get("refresh_token"))
            token_type = _optional_str(body.get("token_type")) or "Bearer"
        except (TypeError, ValueError, OverflowError):
            return self._malformed_response(operation)

        logger.info(
            "oauth_token_request_complete",
            provider=self.name,
            operation=operation,
            latency_ms=(time.monotonic() - start_time) * 1000,
        )
        return ProviderResult.success(
            TokenSet(
                access_token=access_token,
                refresh_token=refresh_token,
                expires_in=expires_in,
                token_type=token_type,
                scope=scope,
            )
        )

    def _http_failure(
        self,
        operation: str,
        resp: httpx.Response,
        error_code: str | None = None,
    ) -> ProviderResult[Any]:
        logger.error(
            "oauth_request_failed",
            provider=self.name,
            operation=operation,
            status_code=resp.status_code,
            error_code=error_code,
        )
        detail = error_code or f"HTTP {resp.status_code}"
        return ProviderResult.fail(FailureKind.RECOVERABLE, detail, code=error_code)

    def _malformed_response(self, operation: str) -> ProviderResult[Any]:
        logger.error("oauth_response_malformed", provider=self.name, operation=operation)
        return ProviderResult.fail(FailureKind.RECOVERABLE, MALFORMED_RESPONSE)

    def _transport_failure(self, operation: str, error: Exception) -> ProviderResult[Any]:
        logger.error(
            "oauth_request_failed",
            provider=self.name,
            operation=operation,
            error_type=type(error).__name__,
        )
        if isinstance(error, httpx.TimeoutException):
            return ProviderResult.fail(FailureKind.RECOVERABLE, "Request timed out")
        return ProviderResult.fail(FailureKind.RECOVERABLE, type(error).__name__)
