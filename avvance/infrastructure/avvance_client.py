"""HTTP clients for the Avvance financing and pre-approval APIs.

Every business call obtains a token from the TokenCache first. Calls made
with a cached token that come back 401 invalidate the cache and are
retried exactly once with a fresh token. The notification-status call
always uses a fresh token.
"""

import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

import httpx
import structlog

from avvance.infrastructure.config import AvvanceConfig
from avvance.infrastructure.errors import (
    AuthenticationError,
    MalformedResponseError,
    RemoteBusinessError,
    TransportError,
)
from avvance.infrastructure.token_cache import TokenCache

logger = structlog.get_logger()

LOAN_API = "/poslp/services/avvance-loan/v1"
CREATE_PATH = f"{LOAN_API}/create"
NOTIFICATION_STATUS_PATH = f"{LOAN_API}/notification-status"
VOID_PATH = f"{LOAN_API}/void"
REFUND_PATH = f"{LOAN_API}/refund"
PRICE_BREAKDOWN_PATH = f"{LOAN_API}/price-breakdown"
PREAPPROVAL_PATH = "/poslp/services/pre-approval/v1/create"

CLIENT_APPLICATION = "MERCHANT_PORTAL"
PREAPPROVAL_CHANNEL = "owa"


# ============================================================================
# Request / Response Types
# ============================================================================


@dataclass
class Address:
    """Postal address sent with a financing request."""

    street1: str = ""
    street2: str = ""
    city: str = ""
    state: str = ""
    postal_code: str = ""
    country_code: str = ""

    def is_empty(self) -> bool:
        return not (self.street1 or self.city or self.postal_code)

    def to_payload(self) -> dict[str, str]:
        return {
            "street1": self.street1,
            "street2": self.street2,
            "city": self.city,
            "state": self.state,
            "postalCode": self.postal_code,
            "countryCode": self.country_code,
        }


@dataclass
class OrderDetails:
    """Order data needed to open a financing application."""

    order_id: str
    order_key: str
    amount: Decimal
    email: str
    first_name: str
    last_name: str
    phone: str
    billing_address: Address
    shipping_address: Address | None = None
    ip_address: str | None = None
    description: str = ""
    return_error_url: str = ""
    metadata: dict[str, str] = field(default_factory=dict)

    def to_payload(self, partner_session_id: str, merchant_id: str) -> dict[str, Any]:
        """Build the body of the create call."""
        shipping = self.shipping_address
        if shipping is None or shipping.is_empty():
            shipping = self.billing_address
        metadata = {"order_id": self.order_id, **self.metadata}
        return {
            "partnerSessionId": partner_session_id,
            "clientApplication": CLIENT_APPLICATION,
            "merchantId": merchant_id,
            "invoiceAmount": f"{self.amount:.2f}",
            "invoiceId": self.order_id,
            "merchantTransactionId": self.order_key,
            "purchaseDescription": self.description,
            "consumer": {
                "email": self.email,
                "firstName": self.first_name,
                "lastName": self.last_name,
                "mobilePhone": "".join(ch for ch in self.phone if ch.isdigit()),
                "billingAddress": self.billing_address.to_payload(),
                "shippingAddress": shipping.to_payload(),
                "IPAddress": self.ip_address or "",
            },
            "partnerReturnErrorUrl": self.return_error_url,
            "metadata": [{"key": k, "value": v} for k, v in metadata.items()],
        }


@dataclass(frozen=True)
class FinancingApplication:
    """Result of a successful create call."""

    application_id: str | None
    partner_session_id: str
    onboarding_url: str


@dataclass(frozen=True)
class PreApprovalRequest:
    """Result of a successful pre-approval create call."""

    onboarding_url: str
    request_id: str


def _remote_message(response: httpx.Response) -> str | None:
    """Extract ``error.message`` from an error body, if present."""
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
    return None


def _json_body(operation: str, response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError as e:
        raise MalformedResponseError(
            operation, "Response body is not JSON", response.status_code
        ) from e
    if not isinstance(body, dict):
        raise MalformedResponseError(
            operation, "Response body is not an object", response.status_code
        )
    return body


# ============================================================================
# Base Client
# ============================================================================


class AvvanceApiClient:
    """Shared request plumbing for the Avvance APIs."""

    def __init__(
        self,
        config: AvvanceConfig,
        token_cache: TokenCache,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize client.

        Args:
            config: Avvance configuration.
            token_cache: Token cache shared by all clients.
            http_client: Shared HTTP client; one is created lazily if omitted.
        """
        self.config = config
        self.token_cache = token_cache
        self._client = http_client
        self._owns_client = http_client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=self.config.http_timeout,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if this client created it."""
        if self._client and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _headers(
        self,
        token: str,
        routing: bool = False,
        extra: dict[str, str] | None = None,
    ) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Correlation-ID": str(uuid.uuid4()),
            "partner-ID": self.config.partner_id,
        }
        if routing:
            headers["routing-key"] = self.config.routing_key
        if extra:
            headers.update(extra)
        return headers

    async def _send(
        self,
        operation: str,
        method: str,
        path: str,
        token: str,
        *,
        json_body: dict[str, Any] | None = None,
        routing: bool = False,
        extra_headers: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> httpx.Response:
        try:
            client = await self._get_client()
            return await client.request(
                method,
                path,
                json=json_body,
                headers=self._headers(token, routing, extra_headers),
                timeout=timeout or self.config.http_timeout,
            )
        except httpx.RequestError as e:
            logger.warning("Avvance request failed", operation=operation, error=str(e))
            raise TransportError(operation, f"Request failed: {e}") from e

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send with a cached token, retrying once with a fresh one on 401."""
        credentials = self.config.credentials
        token = await self.token_cache.get_token(credentials)
        response = await self._send(operation, method, path, token, **kwargs)
        if response.status_code == 401:
            logger.warning("Avvance rejected cached token, retrying", operation=operation)
            self.token_cache.invalidate(credentials)
            token = await self.token_cache.get_fresh_token(credentials)
            response = await self._send(operation, method, path, token, **kwargs)
            if response.status_code == 401:
                self.token_cache.invalidate(credentials)
                raise AuthenticationError(operation, "Token rejected after refresh", 401)
        return response


# ============================================================================
# Financing API Client
# ============================================================================


class FinancingApiClient(AvvanceApiClient):
    """Loan application lifecycle calls."""

    def __init__(
        self,
        config: AvvanceConfig,
        token_cache: TokenCache,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(config, token_cache, http_client)
        self._clock = clock
        self._price_cache: dict[tuple[str, str], tuple[float, dict[str, Any]]] = {}

    async def create_financing_request(self, order: OrderDetails) -> FinancingApplication:
        """Open a financing application for an order.

        A fresh partner session id is generated for each attempt. After a
        TransportError the remote side may still have created the
        application; rely on a later status check instead of retrying.

        Args:
            order: Order details.

        Returns:
            FinancingApplication with onboarding URL and identifiers.

        Raises:
            TransportError: Network failure or timeout.
            AuthenticationError: Token could not be obtained.
            RemoteBusinessError: Anything other than 201 with an onboarding URL.
        """
        partner_session_id = str(uuid.uuid4())
        payload = order.to_payload(partner_session_id, self.config.merchant_id)

        logger.info("Creating financing request", order_id=order.order_id)
        response = await self._request(
            "create", "POST", CREATE_PATH, json_body=payload
        )

        body: dict[str, Any] = {}
        try:
            parsed = response.json()
            if isinstance(parsed, dict):
                body = parsed
        except ValueError:
            pass

        onboarding_url = body.get("consumerOnboardingURL")
        if response.status_code != 201 or not onboarding_url:
            message = _remote_message(response)
            logger.error(
                "Financing request failed",
                order_id=order.order_id,
                status_code=response.status_code,
                error=message,
            )
            raise RemoteBusinessError("create", response.status_code, message)

        application_id = body.get("applicationGUID")
        logger.info(
            "Financing request created",
            order_id=order.order_id,
            application_id=application_id,
            partner_session_id=partner_session_id,
        )
        return FinancingApplication(
            application_id=application_id,
            partner_session_id=partner_session_id,
            onboarding_url=onboarding_url,
        )

    async def get_notification_status(self, correlation_id: str) -> dict[str, Any]:
        """Fetch the current loan status for an application.

        Always authenticates with a freshly fetched token. A 401 also
        invalidates the cache so the next caller re-authenticates.

        Args:
            correlation_id: Application GUID (or partner session id).

        Returns:
            Decoded response body.

        Raises:
            TransportError: Network failure or timeout.
            AuthenticationError: Token fetch failed or the call returned 401.
            RemoteBusinessError: Any other non-200 response.
            MalformedResponseError: 200 with a non-JSON body.
        """
        credentials = self.config.credentials
        token = await self.token_cache.get_fresh_token(credentials)
        response = await self._send(
            "notification-status",
            "GET",
            NOTIFICATION_STATUS_PATH,
            token,
            routing=True,
            extra_headers={
                "merchant-Id": self.config.merchant_id,
                "notificationId": correlation_id,
            },
            timeout=self.config.status_timeout,
        )

        if response.status_code == 401:
            self.token_cache.invalidate(credentials)
            logger.error("Notification status rejected token", correlation_id=correlation_id)
            raise AuthenticationError("notification-status", "Token rejected", 401)
        if response.status_code != 200:
            logger.error(
                "Notification status request failed",
                correlation_id=correlation_id,
                status_code=response.status_code,
            )
            raise RemoteBusinessError(
                "notification-status", response.status_code, _remote_message(response)
            )

        return _json_body("notification-status", response)

    async def void_transaction(self, partner_session_id: str) -> dict[str, Any]:
        """Void an authorized transaction in full."""
        logger.info("Voiding transaction", partner_session_id=partner_session_id)
        response = await self._request(
            "void",
            "POST",
            VOID_PATH,
            json_body={
                "merchantId": self.config.merchant_id,
                "partnerSessionId": partner_session_id,
            },
        )
        return self._settlement_result("void", response)

    async def refund_transaction(
        self, partner_session_id: str, amount: Decimal
    ) -> dict[str, Any]:
        """Refund a settled transaction, fully or partially."""
        logger.info(
            "Refunding transaction",
            partner_session_id=partner_session_id,
            amount=str(amount),
        )
        response = await self._request(
            "refund",
            "POST",
            REFUND_PATH,
            json_body={
                "merchantId": self.config.merchant_id,
                "partnerSessionId": partner_session_id,
                "refundAmount": float(amount),
            },
        )
        return self._settlement_result("refund", response)

    def _settlement_result(self, operation: str, response: httpx.Response) -> dict[str, Any]:
        if response.status_code not in (200, 201):
            message = _remote_message(response)
            logger.error(
                "Settlement request failed",
                operation=operation,
                status_code=response.status_code,
                error=message,
            )
            raise RemoteBusinessError(operation, response.status_code, message)
        logger.info("Settlement request succeeded", operation=operation)
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    async def get_price_breakdown(
        self, amount: Decimal, bypass_cache: bool = False
    ) -> dict[str, Any]:
        """Look up installment options for an amount.

        Successful results are cached per merchant and amount, up to
        ``price_breakdown_cache_size`` entries. The body is never logged.

        Args:
            amount: Intended spending amount.
            bypass_cache: Skip the cache lookup (the result is still stored).

        Returns:
            Decoded payment options.
        """
        cache_key = (self.config.merchant_id, f"{amount:.2f}")
        now = self._clock()
        if not bypass_cache:
            cached = self._price_cache.get(cache_key)
            if cached and now < cached[0]:
                logger.debug("Using cached price breakdown", amount=cache_key[1])
                return cached[1]

        response = await self._request(
            "price-breakdown",
            "POST",
            PRICE_BREAKDOWN_PATH,
            json_body={
                "merchantId": self.config.merchant_id,
                "intendedSpendingAmount": float(amount),
            },
            routing=True,
        )
        logger.info("Price breakdown response", status_code=response.status_code)

        if response.status_code not in (200, 201):
            raise RemoteBusinessError(
                "price-breakdown", response.status_code, _remote_message(response)
            )
        body = _json_body("price-breakdown", response)
        if not body:
            raise MalformedResponseError(
                "price-breakdown", "Empty price breakdown", response.status_code
            )

        self._store_price_breakdown(cache_key, body, now)
        return body

    def _store_price_breakdown(
        self, cache_key: tuple[str, str], body: dict[str, Any], now: float
    ) -> None:
        """Cache a result, dropping expired entries and then the oldest ones."""
        limit = self.config.price_breakdown_cache_size
        if limit <= 0:
            return
        cache = self._price_cache
        for key in [key for key, (expires_at, _) in cache.items() if expires_at <= now]:
            del cache[key]
        cache.pop(cache_key, None)
        while len(cache) >= limit:
            del cache[next(iter(cache))]
        cache[cache_key] = (now + self.config.price_breakdown_cache_ttl, body)

    def clear_price_breakdown_cache(self, amount: Decimal | None = None) -> None:
        """Drop cached price breakdowns for one amount, or all of them."""
        if amount is None:
            self._price_cache.clear()
        else:
            self._price_cache.pop((self.config.merchant_id, f"{amount:.2f}"), None)


# ============================================================================
# Pre-Approval API Client
# ============================================================================


class PreApprovalApiClient(AvvanceApiClient):
    """Anonymous pre-approval calls."""

    async def create_preapproval(
        self, session_id: str, merchant_hash: str
    ) -> PreApprovalRequest:
        """Start a pre-approval for a browser session.

        Only status codes are logged; bodies may contain personal data.

        Args:
            session_id: Local pre-approval session id.
            merchant_hash: Hashed merchant id.

        Returns:
            PreApprovalRequest with onboarding URL and request id.

        Raises:
            TransportError: Network failure or timeout.
            AuthenticationError: Token could not be obtained.
            RemoteBusinessError: Non-200/201 response.
            MalformedResponseError: Required fields missing from the body.
        """
        response = await self._request(
            "preapproval",
            "POST",
            PREAPPROVAL_PATH,
            json_body={"hashedMID": merchant_hash},
            routing=True,
            extra_headers={
                "channel-id": PREAPPROVAL_CHANNEL,
                "application-id": self.config.preapproval_application_id,
                "clientdata": '{"ChannelID":"owa"}',
                "Session-ID": session_id,
            },
        )
        logger.info("Pre-approval response", status_code=response.status_code)

        if response.status_code not in (200, 201):
            raise RemoteBusinessError(
                "preapproval", response.status_code, _remote_message(response)
            )

        body = _json_body("preapproval", response)
        onboarding_url = body.get("preApprovalOnboardingURL")
        request_id = body.get("preApprovalRequestID")
        if not onboarding_url or not request_id:
            logger.error("Invalid pre-approval response structure")
            raise MalformedResponseError(
                "preapproval", "Invalid pre-approval response", response.status_code
            )

        return PreApprovalRequest(onboarding_url=onboarding_url, request_id=str(request_id))
