"""Shared fixtures: settings, a fake Avvance API and a wired container."""

import asyncio
import base64
import json
from collections.abc import Callable, Iterator
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

import httpx
import pytest
from fastapi.testclient import TestClient

from avvance.container import Container, build_container
from avvance.domain.state_machines import FinancingStatus
from avvance.infrastructure.config import AvvanceConfig, Settings
from avvance.infrastructure.database import create_all
from avvance.infrastructure.models import FinancingSessionModel
from avvance.infrastructure.order_gateway import InMemoryOrderGateway
from avvance.infrastructure.session_store import SessionStore

AVVANCE_BASE_URL = "https://avvance.test"
WEBHOOK_USERNAME = "avvance-hook"
WEBHOOK_PASSWORD = "hook-secret-123"
ADMIN_API_KEY = "test-admin-key"


def basic_auth(username: str, password: str) -> dict[str, str]:
    """Build a Basic Authorization header."""
    encoded = base64.b64encode(f"{username}:{password}".encode()).decode()
    return {"Authorization": f"Basic {encoded}"}


def loan_status_event(
    status: str,
    application_id: str | None = "app-1",
    partner_session_id: str | None = None,
    transaction_id: str | None = None,
) -> dict[str, Any]:
    """Build a LOAN_STATUS webhook body."""
    details: dict[str, Any] = {"loanStatus": {"status": status}}
    if application_id:
        details["applicationGUID"] = application_id
    if partner_session_id:
        details["partnerSessionId"] = partner_session_id
    if transaction_id:
        details["paymentTransactionId"] = transaction_id
    return {"eventName": "LOAN_STATUS", "eventDetails": details}


# ============================================================================
# Fake Avvance API
# ============================================================================


class FakeAvvance:
    """In-process stand-in for the Avvance API.

    Attributes:
        requests: Every request received, in order.
        token_count: Number of tokens issued.
        expires_in: Lifetime reported for issued tokens.
        statuses: Loan status returned by notification-status, per id.
        transaction_ids: Transaction id returned with a status, per id.
        revoked: Tokens answered with 401.
        overrides: Path -> handler returning a custom response.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.token_count = 0
        self.expires_in = 899
        self.statuses: dict[str, str] = {}
        self.transaction_ids: dict[str, str] = {}
        self.revoked: set[str] = set()
        self.overrides: dict[str, Callable[[httpx.Request], httpx.Response]] = {}
        self._applications = 0
        self._preapprovals = 0

    def calls(self, path_suffix: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith(path_suffix)]

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=AVVANCE_BASE_URL,
            transport=httpx.MockTransport(self.handler),
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path in self.overrides:
            return self.overrides[path](request)

        if path.endswith("/oauth2/v1/token"):
            self.token_count += 1
            return httpx.Response(
                200,
                json={"accessToken": f"token-{self.token_count}", "expiresIn": self.expires_in},
            )

        token = request.headers.get("Authorization", "").removeprefix("Bearer ")
        if token in self.revoked:
            return httpx.Response(401, json={"error": {"message": "invalid token"}})

        if path.endswith("/avvance-loan/v1/create"):
            self._applications += 1
            application_id = f"app-{self._applications}"
            return httpx.Response(
                201,
                json={
                    "applicationGUID": application_id,
                    "consumerOnboardingURL": f"https://onboard.test/{application_id}",
                },
            )

        if path.endswith("/notification-status"):
            notification_id = request.headers.get("notificationId", "")
            details: dict[str, Any] = {
                "applicationGUID": notification_id,
                "loanStatus": {"status": self.statuses.get(notification_id, "APPLICATION_STARTED")},
            }
            if notification_id in self.transaction_ids:
                details["paymentTransactionId"] = self.transaction_ids[notification_id]
            return httpx.Response(200, json={"eventName": "LOAN_STATUS", "eventDetails": details})

        if path.endswith("/void") or path.endswith("/refund"):
            return httpx.Response(200, json={"status": "SUCCESS"})

        if path.endswith("/price-breakdown"):
            body = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "amount": body["intendedSpendingAmount"],
                    "paymentOptions": [{"term": 12, "apr": "9.99", "monthlyPayment": "43.96"}],
                },
            )

        if path.endswith("/pre-approval/v1/create"):
            self._preapprovals += 1
            request_id = f"req-{self._preapprovals}"
            return httpx.Response(
                200,
                json={
                    "preApprovalOnboardingURL": f"https://preapprove.test/{request_id}",
                    "preApprovalRequestID": request_id,
                },
            )

        return httpx.Response(404, json={"error": {"message": "not found"}})


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings pointing at a per-test SQLite database."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path}/test.db",
        avvance_client_key="client-key",
        avvance_client_secret="client-secret",
        avvance_merchant_id="MID-1",
        avvance_hashed_merchant_id="hashed-mid",
        avvance_base_url=AVVANCE_BASE_URL,
        webhook_username=WEBHOOK_USERNAME,
        webhook_password=WEBHOOK_PASSWORD,
        admin_api_key=ADMIN_API_KEY,
        status_check_secret="test-status-secret",
        storefront_api_url=None,
        order_received_url_template="https://shop.test/order-received/{order_id}",
        fingerprint_cookie_secure=False,
        cleanup_enabled=False,
        log_json=False,
    )


@pytest.fixture
def config(settings: Settings) -> AvvanceConfig:
    return AvvanceConfig.from_settings(settings)


@pytest.fixture
def fake_avvance() -> FakeAvvance:
    return FakeAvvance()


@pytest.fixture
def orders(settings: Settings) -> InMemoryOrderGateway:
    return InMemoryOrderGateway(settings.order_received_url_template)


@pytest.fixture
def container(
    settings: Settings,
    fake_avvance: FakeAvvance,
    orders: InMemoryOrderGateway,
) -> Iterator[Container]:
    """Fully wired container backed by SQLite and the fake API."""
    wired = build_container(settings, http_client=fake_avvance.client(), orders=orders)
    asyncio.run(create_all(wired.engine))
    yield wired
    asyncio.run(wired.engine.dispose())


@pytest.fixture
def client(container: Container) -> TestClient:
    """Create test client for the wired application."""
    from avvance.main import create_app

    return TestClient(create_app(container))


@pytest.fixture
def webhook_headers() -> dict[str, str]:
    return basic_auth(WEBHOOK_USERNAME, WEBHOOK_PASSWORD)


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {ADMIN_API_KEY}"}


@pytest.fixture
def make_session(container: Container):
    """Insert a financing session directly into the store."""

    async def _make(
        order_id: str = "1001",
        application_id: str | None = "app-1",
        partner_session_id: str = "ps-1",
        status: FinancingStatus = FinancingStatus.CREATED,
        amount: Decimal = Decimal("500.00"),
        created_at: datetime | None = None,
    ) -> str:
        created_at = created_at or datetime.now(timezone.utc)
        async with container.session_factory() as db:
            record = await SessionStore(db).create(
                FinancingSessionModel(
                    order_id=order_id,
                    application_id=application_id,
                    partner_session_id=partner_session_id,
                    onboarding_url=f"https://onboard.test/{application_id}",
                    status=status.value,
                    amount=amount,
                    created_at=created_at,
                    updated_at=created_at,
                )
            )
            await db.commit()
            return record.id

    return _make


@pytest.fixture
def load_session(container: Container):
    """Read a session and its history back from the store."""

    async def _load(session_ref: str) -> tuple[FinancingSessionModel | None, list]:
        async with container.session_factory() as db:
            store = SessionStore(db)
            record = await store.find_by_correlation(session_ref)
            history = list(await store.history(record.id)) if record else []
            return record, history

    return _load
