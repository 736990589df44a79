"""OAuth token cache for the Avvance API.

Tokens are obtained with the client-credentials grant and kept in memory
until shortly before the provider-declared expiry. Simultaneous misses
for the same credentials may each fetch a token; issuance is idempotent.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass

import httpx
import structlog

from avvance.infrastructure.config import AvvanceConfig, ClientCredentials
from avvance.infrastructure.errors import AuthenticationError, TransportError

logger = structlog.get_logger()

TOKEN_PATH = "/auth/oauth2/v1/token"
DEFAULT_EXPIRES_IN = 600


@dataclass(frozen=True)
class Token:
    """Access token with its lifetime on the cache clock.

    Attributes:
        value: Bearer token string.
        issued_at: When the token was received.
        expires_at: Provider-declared expiry.
        serve_until: Last instant the cache may hand the token out.
    """

    value: str
    issued_at: float
    expires_at: float
    serve_until: float

    def is_servable(self, now: float) -> bool:
        return now < self.serve_until


class TokenCache:
    """In-memory token cache keyed by client credentials.

    No retry happens here; callers decide whether to call
    ``get_fresh_token`` after a downstream authentication failure.
    """

    def __init__(
        self,
        config: AvvanceConfig,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize token cache.

        Args:
            config: Avvance configuration.
            http_client: Shared HTTP client; one is created lazily if omitted.
            clock: Monotonic clock in seconds.
        """
        self.config = config
        self._clock = clock
        self._client = http_client
        self._owns_client = http_client is None
        self._tokens: dict[str, Token] = {}

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=self.config.http_timeout,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if this cache created it."""
        if self._client and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def get_token(self, credentials: ClientCredentials) -> str:
        """Return a cached token, fetching a new one on miss or expiry.

        Args:
            credentials: Client credentials identifying the cache entry.

        Returns:
            Bearer token string.

        Raises:
            TransportError: Token endpoint unreachable.
            AuthenticationError: Token endpoint rejected the credentials.
        """
        cached = self._tokens.get(credentials.cache_key)
        if cached and cached.is_servable(self._clock()):
            return cached.value
        return await self.get_fresh_token(credentials)

    async def get_fresh_token(self, credentials: ClientCredentials) -> str:
        """Fetch a token unconditionally and overwrite the cache entry."""
        token = await self._fetch(credentials)
        if token.serve_until > token.issued_at:
            self._tokens[credentials.cache_key] = token
        else:
            # Lifetime at or below the safety buffer: hand out once, never cache.
            self._tokens.pop(credentials.cache_key, None)
        return token.value

    def invalidate(self, credentials: ClientCredentials) -> None:
        """Drop the cached token for these credentials."""
        if self._tokens.pop(credentials.cache_key, None) is not None:
            logger.info("Avvance token invalidated", cache_key=credentials.cache_key)

    async def _fetch(self, credentials: ClientCredentials) -> Token:
        if not credentials.client_key or not credentials.client_secret:
            raise AuthenticationError("token", "Avvance client credentials are not configured")

        try:
            client = await self._get_client()
            response = await client.post(
                TOKEN_PATH,
                data={"grant_type": "client_credentials"},
                auth=(credentials.client_key, credentials.client_secret),
                headers={"Accept": "application/json"},
                timeout=self.config.http_timeout,
            )
        except httpx.RequestError as e:
            logger.warning("Avvance token request failed", error=str(e))
            raise TransportError("token", f"Token endpoint unreachable: {e}") from e

        if response.status_code != 200:
            logger.error("Avvance token request rejected", status_code=response.status_code)
            raise AuthenticationError(
                "token",
                f"Token endpoint returned {response.status_code}",
                response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise AuthenticationError("token", "Token response is not JSON", 200) from e

        access_token = data.get("accessToken") if isinstance(data, dict) else None
        if not access_token:
            raise AuthenticationError("token", "Token response has no accessToken", 200)

        try:
            expires_in = int(data.get("expiresIn", DEFAULT_EXPIRES_IN))
        except (TypeError, ValueError):
            expires_in = DEFAULT_EXPIRES_IN

        now = self._clock()
        logger.debug("Avvance token obtained", expires_in=expires_in)
        return Token(
            value=access_token,
            issued_at=now,
            expires_at=now + expires_in,
            serve_until=now + expires_in - self.config.token_safety_buffer,
        )
