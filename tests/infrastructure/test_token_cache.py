"""Tests for the OAuth token cache."""

import httpx
import pytest

from avvance.infrastructure.config import AvvanceConfig, ClientCredentials
from avvance.infrastructure.errors import AuthenticationError, TransportError
from avvance.infrastructure.token_cache import TokenCache
from tests.conftest import AVVANCE_BASE_URL, FakeAvvance


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(config: AvvanceConfig, fake_avvance: FakeAvvance, clock: FakeClock) -> TokenCache:
    return TokenCache(config, fake_avvance.client(), clock=clock)


class TestTokenCache:
    """Tests for token caching and expiry."""

    async def test_token_is_reused_within_lifetime(
        self, cache: TokenCache, config: AvvanceConfig, fake_avvance: FakeAvvance, clock: FakeClock
    ) -> None:
        first = await cache.get_token(config.credentials)
        clock.now += 300
        second = await cache.get_token(config.credentials)
        assert first == second == "token-1"
        assert fake_avvance.token_count == 1

    async def test_token_not_served_after_lifetime_minus_buffer(
        self, cache: TokenCache, config: AvvanceConfig, fake_avvance: FakeAvvance, clock: FakeClock
    ) -> None:
        """expiresIn 899 with a 60 s buffer is served for 839 s, then refetched."""
        fake_avvance.expires_in = 899
        assert await cache.get_token(config.credentials) == "token-1"

        clock.now += 838
        assert await cache.get_token(config.credentials) == "token-1"

        clock.now += 1
        assert await cache.get_token(config.credentials) == "token-2"
        assert fake_avvance.token_count == 2

    async def test_lifetime_within_buffer_is_not_cached(
        self, cache: TokenCache, config: AvvanceConfig, fake_avvance: FakeAvvance
    ) -> None:
        """A token living no longer than the buffer is handed out once."""
        fake_avvance.expires_in = 60
        assert await cache.get_token(config.credentials) == "token-1"
        assert await cache.get_token(config.credentials) == "token-2"

    async def test_fresh_token_bypasses_cache(
        self, cache: TokenCache, config: AvvanceConfig, fake_avvance: FakeAvvance
    ) -> None:
        await cache.get_token(config.credentials)
        assert await cache.get_fresh_token(config.credentials) == "token-2"
        # Fresh token replaces the cached one
        assert await cache.get_token(config.credentials) == "token-2"
        assert fake_avvance.token_count == 2

    async def test_invalidate_forces_refetch(
        self, cache: TokenCache, config: AvvanceConfig, fake_avvance: FakeAvvance
    ) -> None:
        await cache.get_token(config.credentials)
        cache.invalidate(config.credentials)
        assert await cache.get_token(config.credentials) == "token-2"

    async def test_entries_are_keyed_by_credentials(
        self, cache: TokenCache, config: AvvanceConfig, fake_avvance: FakeAvvance
    ) -> None:
        other = ClientCredentials(client_key="other-key", client_secret="other-secret")
        assert await cache.get_token(config.credentials) == "token-1"
        assert await cache.get_token(other) == "token-2"
        assert await cache.get_token(config.credentials) == "token-1"

    async def test_token_request_uses_client_credentials_grant(
        self, cache: TokenCache, config: AvvanceConfig, fake_avvance: FakeAvvance
    ) -> None:
        await cache.get_token(config.credentials)
        request = fake_avvance.calls("/oauth2/v1/token")[0]
        assert request.method == "POST"
        assert request.content == b"grant_type=client_credentials"
        assert request.headers["Authorization"].startswith("Basic ")

    async def test_missing_expires_in_defaults(
        self, cache: TokenCache, config: AvvanceConfig, fake_avvance: FakeAvvance, clock: FakeClock
    ) -> None:
        fake_avvance.overrides["/auth/oauth2/v1/token"] = lambda request: httpx.Response(
            200, json={"accessToken": "abc"}
        )
        await cache.get_token(config.credentials)
        clock.now += 539
        await cache.get_token(config.credentials)
        assert len(fake_avvance.calls("/oauth2/v1/token")) == 1


class TestTokenCacheErrors:
    """Tests for token endpoint failures."""

    async def test_rejected_credentials(
        self, cache: TokenCache, config: AvvanceConfig, fake_avvance: FakeAvvance
    ) -> None:
        fake_avvance.overrides["/auth/oauth2/v1/token"] = lambda request: httpx.Response(
            401, json={"error": "invalid_client"}
        )
        with pytest.raises(AuthenticationError) as exc_info:
            await cache.get_token(config.credentials)
        assert exc_info.value.status_code == 401

    async def test_missing_access_token(
        self, cache: TokenCache, config: AvvanceConfig, fake_avvance: FakeAvvance
    ) -> None:
        fake_avvance.overrides["/auth/oauth2/v1/token"] = lambda request: httpx.Response(
            200, json={"expiresIn": 600}
        )
        with pytest.raises(AuthenticationError):
            await cache.get_token(config.credentials)

    async def test_unconfigured_credentials(self, cache: TokenCache) -> None:
        with pytest.raises(AuthenticationError):
            await cache.get_token(ClientCredentials(client_key="", client_secret=""))

    async def test_network_failure_is_transport_error(self, config: AvvanceConfig) -> None:
        def fail(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        http_client = httpx.AsyncClient(
            base_url=AVVANCE_BASE_URL, transport=httpx.MockTransport(fail)
        )
        cache = TokenCache(config, http_client)
        with pytest.raises(TransportError) as exc_info:
            await cache.get_token(config.credentials)
        assert exc_info.value.retryable
