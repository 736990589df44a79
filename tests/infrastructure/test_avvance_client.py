"""Tests for the Avvance financing and pre-approval API clients."""

import json
from dataclasses import replace
from decimal import Decimal

import httpx
import pytest

from avvance.infrastructure.avvance_client import (
    Address,
    FinancingApiClient,
    OrderDetails,
    PreApprovalApiClient,
)
from avvance.infrastructure.config import AvvanceConfig
from avvance.infrastructure.errors import (
    AuthenticationError,
    MalformedResponseError,
    RemoteBusinessError,
    TransportError,
)
from avvance.infrastructure.token_cache import TokenCache
from tests.conftest import FakeAvvance

CREATE_PATH = "/poslp/services/avvance-loan/v1/create"
STATUS_PATH = "/poslp/services/avvance-loan/v1/notification-status"
PRICE_PATH = "/poslp/services/avvance-loan/v1/price-breakdown"
PREAPPROVAL_PATH = "/poslp/services/pre-approval/v1/create"


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def token_cache(config: AvvanceConfig, fake_avvance: FakeAvvance) -> TokenCache:
    return TokenCache(config, fake_avvance.client())


@pytest.fixture
def financing_client(
    config: AvvanceConfig, token_cache: TokenCache, fake_avvance: FakeAvvance, clock: FakeClock
) -> FinancingApiClient:
    return FinancingApiClient(config, token_cache, fake_avvance.client(), clock=clock)


@pytest.fixture
def preapproval_client(
    config: AvvanceConfig, token_cache: TokenCache, fake_avvance: FakeAvvance
) -> PreApprovalApiClient:
    return PreApprovalApiClient(config, token_cache, fake_avvance.client())


@pytest.fixture
def order() -> OrderDetails:
    return OrderDetails(
        order_id="1001",
        order_key="wc_order_abc",
        amount=Decimal("500"),
        email="jane@example.com",
        first_name="Jane",
        last_name="Doe",
        phone="(555) 123-4567",
        billing_address=Address(
            street1="1 Main St", city="Austin", state="TX", postal_code="78701", country_code="US"
        ),
        description="Order #1001 from Avvance Store",
    )


class TestOrderPayload:
    """Tests for the create request body."""

    def test_payload_fields(self, order: OrderDetails) -> None:
        payload = order.to_payload("ps-1", "MID-1")
        assert payload["partnerSessionId"] == "ps-1"
        assert payload["merchantId"] == "MID-1"
        assert payload["invoiceAmount"] == "500.00"
        assert payload["merchantTransactionId"] == "wc_order_abc"
        assert payload["consumer"]["mobilePhone"] == "5551234567"
        assert {"key": "order_id", "value": "1001"} in payload["metadata"]

    def test_shipping_falls_back_to_billing(self, order: OrderDetails) -> None:
        payload = order.to_payload("ps-1", "MID-1")
        assert payload["consumer"]["shippingAddress"] == payload["consumer"]["billingAddress"]


class TestCreateFinancingRequest:
    """Tests for create_financing_request."""

    async def test_created(
        self, financing_client: FinancingApiClient, order: OrderDetails, fake_avvance: FakeAvvance
    ) -> None:
        application = await financing_client.create_financing_request(order)
        assert application.application_id == "app-1"
        assert application.onboarding_url == "https://onboard.test/app-1"

        request = fake_avvance.calls(CREATE_PATH)[0]
        body = json.loads(request.content)
        assert body["partnerSessionId"] == application.partner_session_id
        assert request.headers["Authorization"] == "Bearer token-1"
        assert request.headers["partner-ID"] == "CONVERGE"
        assert request.headers["Correlation-ID"]

    async def test_each_attempt_has_new_partner_session_id(
        self, financing_client: FinancingApiClient, order: OrderDetails
    ) -> None:
        first = await financing_client.create_financing_request(order)
        second = await financing_client.create_financing_request(order)
        assert first.partner_session_id != second.partner_session_id

    async def test_correlation_id_is_fresh_per_call(
        self, financing_client: FinancingApiClient, order: OrderDetails, fake_avvance: FakeAvvance
    ) -> None:
        await financing_client.create_financing_request(order)
        await financing_client.create_financing_request(order)
        ids = {r.headers["Correlation-ID"] for r in fake_avvance.calls(CREATE_PATH)}
        assert len(ids) == 2

    async def test_200_without_url_is_business_error(
        self, financing_client: FinancingApiClient, order: OrderDetails, fake_avvance: FakeAvvance
    ) -> None:
        """Only 201 with an onboarding URL counts as success."""
        fake_avvance.overrides[CREATE_PATH] = lambda request: httpx.Response(
            200, json={"applicationGUID": "app-x"}
        )
        with pytest.raises(RemoteBusinessError):
            await financing_client.create_financing_request(order)

    async def test_remote_message_is_surfaced(
        self, financing_client: FinancingApiClient, order: OrderDetails, fake_avvance: FakeAvvance
    ) -> None:
        fake_avvance.overrides[CREATE_PATH] = lambda request: httpx.Response(
            400, json={"error": {"message": "Invalid invoice amount"}}
        )
        with pytest.raises(RemoteBusinessError) as exc_info:
            await financing_client.create_financing_request(order)
        assert exc_info.value.remote_message == "Invalid invoice amount"
        assert exc_info.value.status_code == 400
        assert not exc_info.value.retryable

    async def test_timeout_is_transport_error(
        self, financing_client: FinancingApiClient, order: OrderDetails, fake_avvance: FakeAvvance
    ) -> None:
        def timeout(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        fake_avvance.overrides[CREATE_PATH] = timeout
        with pytest.raises(TransportError):
            await financing_client.create_financing_request(order)


class TestTokenRetry:
    """Tests for the single fresh-token retry on 401."""

    async def test_cached_token_rejected_once_then_retried(
        self, financing_client: FinancingApiClient, order: OrderDetails, fake_avvance: FakeAvvance
    ) -> None:
        await financing_client.create_financing_request(order)
        fake_avvance.revoked.add("token-1")

        application = await financing_client.create_financing_request(order)

        assert application.application_id == "app-2"
        assert fake_avvance.token_count == 2
        retried = fake_avvance.calls(CREATE_PATH)[-1]
        assert retried.headers["Authorization"] == "Bearer token-2"

    async def test_second_401_raises_without_further_retry(
        self, financing_client: FinancingApiClient, order: OrderDetails, fake_avvance: FakeAvvance
    ) -> None:
        fake_avvance.overrides[CREATE_PATH] = lambda request: httpx.Response(401)
        with pytest.raises(AuthenticationError):
            await financing_client.create_financing_request(order)
        assert len(fake_avvance.calls(CREATE_PATH)) == 2
        assert fake_avvance.token_count == 2


class TestNotificationStatus:
    """Tests for get_notification_status."""

    async def test_uses_fresh_token_and_routing_headers(
        self, financing_client: FinancingApiClient, fake_avvance: FakeAvvance
    ) -> None:
        fake_avvance.statuses["app-1"] = "APPLICATION_APPROVED"

        await financing_client.get_notification_status("app-1")
        body = await financing_client.get_notification_status("app-1")

        assert body["eventDetails"]["loanStatus"]["status"] == "APPLICATION_APPROVED"
        assert fake_avvance.token_count == 2
        request = fake_avvance.calls(STATUS_PATH)[-1]
        assert request.method == "GET"
        assert request.headers["routing-key"] == "uat3"
        assert request.headers["merchant-Id"] == "MID-1"
        assert request.headers["notificationId"] == "app-1"

    async def test_401_invalidates_cache(
        self,
        financing_client: FinancingApiClient,
        token_cache: TokenCache,
        config: AvvanceConfig,
        fake_avvance: FakeAvvance,
    ) -> None:
        fake_avvance.overrides[STATUS_PATH] = lambda request: httpx.Response(401)
        with pytest.raises(AuthenticationError):
            await financing_client.get_notification_status("app-1")
        assert len(fake_avvance.calls(STATUS_PATH)) == 1

        # Next cached lookup has to fetch again
        await token_cache.get_token(config.credentials)
        assert fake_avvance.token_count == 2

    async def test_non_json_body_is_malformed(
        self, financing_client: FinancingApiClient, fake_avvance: FakeAvvance
    ) -> None:
        fake_avvance.overrides[STATUS_PATH] = lambda request: httpx.Response(200, text="<html>")
        with pytest.raises(MalformedResponseError):
            await financing_client.get_notification_status("app-1")

    async def test_server_error_is_business_error(
        self, financing_client: FinancingApiClient, fake_avvance: FakeAvvance
    ) -> None:
        fake_avvance.overrides[STATUS_PATH] = lambda request: httpx.Response(503)
        with pytest.raises(RemoteBusinessError) as exc_info:
            await financing_client.get_notification_status("app-1")
        assert exc_info.value.status_code == 503


class TestSettlement:
    """Tests for void and refund."""

    async def test_void(self, financing_client: FinancingApiClient, fake_avvance: FakeAvvance) -> None:
        result = await financing_client.void_transaction("ps-1")
        assert result == {"status": "SUCCESS"}
        body = json.loads(fake_avvance.calls("/void")[0].content)
        assert body == {"merchantId": "MID-1", "partnerSessionId": "ps-1"}

    async def test_refund_sends_amount(
        self, financing_client: FinancingApiClient, fake_avvance: FakeAvvance
    ) -> None:
        await financing_client.refund_transaction("ps-1", Decimal("120.50"))
        body = json.loads(fake_avvance.calls("/refund")[0].content)
        assert body["refundAmount"] == 120.5

    async def test_refund_failure(
        self, financing_client: FinancingApiClient, fake_avvance: FakeAvvance
    ) -> None:
        fake_avvance.overrides["/poslp/services/avvance-loan/v1/refund"] = lambda request: httpx.Response(
            422, json={"error": {"message": "Refund exceeds settled amount"}}
        )
        with pytest.raises(RemoteBusinessError) as exc_info:
            await financing_client.refund_transaction("ps-1", Decimal("999"))
        assert exc_info.value.message == "Refund exceeds settled amount"


class TestPriceBreakdown:
    """Tests for price-breakdown caching."""

    async def test_result_is_cached_per_amount(
        self, financing_client: FinancingApiClient, fake_avvance: FakeAvvance, clock: FakeClock
    ) -> None:
        first = await financing_client.get_price_breakdown(Decimal("500"))
        second = await financing_client.get_price_breakdown(Decimal("500.00"))
        await financing_client.get_price_breakdown(Decimal("600"))

        assert first == second
        assert len(fake_avvance.calls(PRICE_PATH)) == 2
        assert fake_avvance.calls(PRICE_PATH)[0].headers["routing-key"] == "uat3"

    async def test_cache_expires(
        self,
        financing_client: FinancingApiClient,
        config: AvvanceConfig,
        fake_avvance: FakeAvvance,
        clock: FakeClock,
    ) -> None:
        await financing_client.get_price_breakdown(Decimal("500"))
        clock.now += config.price_breakdown_cache_ttl
        await financing_client.get_price_breakdown(Decimal("500"))
        assert len(fake_avvance.calls(PRICE_PATH)) == 2

    async def test_bypass_and_clear(
        self, financing_client: FinancingApiClient, fake_avvance: FakeAvvance
    ) -> None:
        await financing_client.get_price_breakdown(Decimal("500"))
        await financing_client.get_price_breakdown(Decimal("500"), bypass_cache=True)
        financing_client.clear_price_breakdown_cache()
        await financing_client.get_price_breakdown(Decimal("500"))
        assert len(fake_avvance.calls(PRICE_PATH)) == 3

    async def test_failure_is_not_cached(
        self, financing_client: FinancingApiClient, fake_avvance: FakeAvvance
    ) -> None:
        fake_avvance.overrides[PRICE_PATH] = lambda request: httpx.Response(500)
        with pytest.raises(RemoteBusinessError):
            await financing_client.get_price_breakdown(Decimal("500"))
        del fake_avvance.overrides[PRICE_PATH]
        await financing_client.get_price_breakdown(Decimal("500"))
        assert len(fake_avvance.calls(PRICE_PATH)) == 2

    async def test_cache_is_bounded(
        self,
        config: AvvanceConfig,
        token_cache: TokenCache,
        fake_avvance: FakeAvvance,
        clock: FakeClock,
    ) -> None:
        """Many distinct amounts never grow the cache past its limit."""
        client = FinancingApiClient(
            replace(config, price_breakdown_cache_size=3),
            token_cache,
            fake_avvance.client(),
            clock=clock,
        )
        for amount in range(300, 350):
            await client.get_price_breakdown(Decimal(amount))
            assert len(client._price_cache) <= 3

        await client.get_price_breakdown(Decimal("349"))
        assert len(fake_avvance.calls(PRICE_PATH)) == 50
        await client.get_price_breakdown(Decimal("300"))
        assert len(fake_avvance.calls(PRICE_PATH)) == 51

    async def test_expired_entries_dropped_on_write(
        self,
        financing_client: FinancingApiClient,
        config: AvvanceConfig,
        clock: FakeClock,
    ) -> None:
        await financing_client.get_price_breakdown(Decimal("500"))
        await financing_client.get_price_breakdown(Decimal("600"))
        clock.now += config.price_breakdown_cache_ttl

        await financing_client.get_price_breakdown(Decimal("700"))

        assert list(financing_client._price_cache) == [(config.merchant_id, "700.00")]


class TestPreApproval:
    """Tests for create_preapproval."""

    async def test_created(
        self, preapproval_client: PreApprovalApiClient, fake_avvance: FakeAvvance
    ) -> None:
        result = await preapproval_client.create_preapproval("avv_session", "hashed-mid")

        assert result.request_id == "req-1"
        assert result.onboarding_url == "https://preapprove.test/req-1"
        request = fake_avvance.calls(PREAPPROVAL_PATH)[0]
        assert json.loads(request.content) == {"hashedMID": "hashed-mid"}
        assert request.headers["channel-id"] == "owa"
        assert request.headers["application-id"] == "woo"
        assert request.headers["Session-ID"] == "avv_session"
        assert request.headers["routing-key"] == "uat3"

    async def test_missing_fields_is_malformed(
        self, preapproval_client: PreApprovalApiClient, fake_avvance: FakeAvvance
    ) -> None:
        fake_avvance.overrides[PREAPPROVAL_PATH] = lambda request: httpx.Response(
            200, json={"preApprovalOnboardingURL": "https://preapprove.test/x"}
        )
        with pytest.raises(MalformedResponseError):
            await preapproval_client.create_preapproval("avv_session", "hashed-mid")

    async def test_production_routing_key(self, settings, fake_avvance: FakeAvvance) -> None:
        production = AvvanceConfig.from_settings(
            settings.model_copy(update={"avvance_environment": "production"})
        )
        client = PreApprovalApiClient(
            production, TokenCache(production, fake_avvance.client()), fake_avvance.client()
        )
        await client.create_preapproval("avv_session", "hashed-mid")
        assert fake_avvance.calls(PREAPPROVAL_PATH)[0].headers["routing-key"] == "az1"
