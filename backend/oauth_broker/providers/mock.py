"""Mock OAuth provider for testing.

MockOAuthProvider enables unit testing of the flow and refresh services
without hitting real provider endpoints.
"""

import asyncio
from collections import deque
from typing import Any

from oauth_broker.providers.base import (
    FailureKind,
    OAuthProviderClient,
    ProviderResult,
    TokenSet,
    UserInfo,
)


class MockOAuthProvider(OAuthProviderClient):
    """Scriptable provider client.

    WHY MOCK:
    - Unit tests shouldn't hit real APIs (speed, flakiness)
    - Enables deterministic testing
    - Can simulate invalid_grant, outages and slow providers

    Refresh results are consumed in order from a queue; when the queue is
    empty a fresh successful TokenSet is returned. If `gate` is set, every
    refresh waits on it first, which lets tests line up concurrent callers.

    Attributes:
        calls: Record of all method invocations for test assertions.
        refresh_results: Queue of results for refresh_token().
        exchange_result: Result for exchange_code().
        user_info_result: Result for get_user_info().
        gate: Optional event that refresh_token() waits on.
        refresh_delay: Optional sleep (seconds) inside refresh_token().
    """

    def __init__(
        self,
        name: str = "mock",
        *,
        scopes: list[str] | None = None,
        required_scopes: list[str] | None = None,
        supports_pkce: bool = True,
    ) -> None:
        self._name = name
        self.scopes = list(scopes) if scopes else ["email", "profile"]
        self.required_scopes = list(required_scopes) if required_scopes else []
        self.supports_pkce = supports_pkce
        self.calls: list[dict[str, Any]] = []
        self.refresh_results: deque[ProviderResult[TokenSet]] = deque()
        self.exchange_result: ProviderResult[TokenSet] = ProviderResult.success(
            TokenSet(
                access_token="mock-access-token",
                refresh_token="mock-refresh-token",
                expires_in=3600,
                scope=" ".join(self.scopes),
            )
        )
        self.user_info_result: ProviderResult[UserInfo] = ProviderResult.success(
            UserInfo(id="mock-user-1", email="user@example.com", email_verified=True)
        )
        self.gate: asyncio.Event | None = None
        self.refresh_delay: float = 0.0
        self._refresh_counter = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def refresh_calls(self) -> int:
        """Number of refresh_token() invocations."""
        return sum(1 for call in self.calls if call["method"] == "refresh_token")

    def queue_refresh(self, *results: ProviderResult[TokenSet]) -> None:
        """Append scripted results for upcoming refresh_token() calls."""
        self.refresh_results.extend(results)

    def fail_refresh(self, kind: FailureKind, times: int = 1, message: str = "") -> None:
        """Queue `times` failing refresh results of the given kind."""
        text = message or (
            "invalid_grant" if kind is FailureKind.NON_RECOVERABLE else "HTTP 503"
        )
        code = "invalid_grant" if kind is FailureKind.NON_RECOVERABLE else None
        for _ in range(times):
            self.refresh_results.append(ProviderResult.fail(kind, text, code=code))

    def set_user(self, email: str, user_id: str = "mock-user-1", **kwargs: Any) -> None:
        """Configure the identity returned by get_user_info()."""
        self.user_info_result = ProviderResult.success(
            UserInfo(id=user_id, email=email, **kwargs)
        )

    def set_granted_scope(self, scope: str | None) -> None:
        """Change the scope string reported by exchange_code()."""
        current = self.exchange_result.value
        if current is None:
            current = TokenSet(access_token="mock-access-token")
        self.exchange_result = ProviderResult.success(
            TokenSet(
                access_token=current.access_token,
                refresh_token=current.refresh_token,
                expires_in=current.expires_in,
                token_type=current.token_type,
                scope=scope,
            )
        )

    def get_authorization_url(
        self,
        state: str,
        code_challenge: str | None = None,
    ) -> str:
        self.calls.append(
            {
                "method": "get_authorization_url",
                "state": state,
                "code_challenge": code_challenge,
            }
        )
        url = f"https://auth.example.com/{self._name}/authorize?state={state}"
        if code_challenge:
            url += f"&code_challenge={code_challenge}&code_challenge_method=S256"
        return url

    async def exchange_code(
        self,
        code: str,
        code_verifier: str | None = None,
    ) -> ProviderResult[TokenSet]:
        self.calls.append(
            {"method": "exchange_code", "code": code, "code_verifier": code_verifier}
        )
        return self.exchange_result

    async def refresh_token(self, refresh_token: str) -> ProviderResult[TokenSet]:
        self.calls.append({"method": "refresh_token", "refresh_token": refresh_token})
        if self.gate is not None:
            await self.gate.wait()
        if self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)

        if self.refresh_results:
            return self.refresh_results.popleft()

        self._refresh_counter += 1
        return ProviderResult.success(
            TokenSet(
                access_token=f"refreshed-access-{self._refresh_counter}",
                expires_in=3600,
            )
        )

    async def get_user_info(self, access_token: str) -> ProviderResult[UserInfo]:
        self.calls.append({"method": "get_user_info", "access_token": access_token})
        return self.user_info_result
