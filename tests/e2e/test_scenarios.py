"""End-to-end checkout scenarios through the HTTP API.

Each scenario drives the wired application with the fake Avvance API and
the in-memory order store, then inspects persisted state.
"""

import asyncio

from fastapi.testclient import TestClient
from sqlalchemy import func, select

from avvance.container import Container
from avvance.infrastructure.models import FinancingSessionEventModel
from avvance.infrastructure.order_gateway import InMemoryOrderGateway
from tests.conftest import FakeAvvance, loan_status_event

AUTHORIZED = "INVOICE_PAYMENT_TRANSACTION_AUTHORIZED"


def checkout(client: TestClient, amount: str = "500.00") -> dict:
    response = client.post(
        "/financing/sessions",
        json={
            "order_id": "1001",
            "order_key": "wc_order_1001",
            "amount": amount,
            "email": "jane@example.com",
            "first_name": "Jane",
            "last_name": "Doe",
            "billing_address": {
                "street1": "1 Main St",
                "city": "Austin",
                "state": "TX",
                "postal_code": "78701",
            },
        },
    )
    assert response.status_code == 201
    return response.json()


async def count_history_rows(container: Container) -> int:
    async with container.session_factory() as db:
        result = await db.execute(select(func.count()).select_from(FinancingSessionEventModel))
        return result.scalar_one()


class TestHappyPath:
    """A $500 order is financed and authorized by webhook."""

    def test_authorized_webhook_pays_order_once(
        self,
        client: TestClient,
        webhook_headers: dict[str, str],
        admin_headers: dict[str, str],
        orders: InMemoryOrderGateway,
        fake_avvance: FakeAvvance,
    ) -> None:
        started = checkout(client)
        assert started["onboarding_url"] == "https://onboard.test/app-1"

        ack = client.post(
            "/webhooks/avvance",
            json=loan_status_event(AUTHORIZED, application_id="app-1", transaction_id="txn-77"),
            headers=webhook_headers,
        )
        assert ack.status_code == 200
        assert ack.json()["status"] == "applied"

        session = client.get(
            f"/admin/financing/sessions/{started['session_ref']}", headers=admin_headers
        ).json()
        assert session["status"] == "authorized"
        assert session["payment_transaction_id"] == "txn-77"

        order = orders.get("1001")
        assert order.paid
        assert order.payments == ["txn-77"]

        # The shopper's status poll afterwards redirects without a second payment
        fake_avvance.statuses["app-1"] = AUTHORIZED
        check = client.post(
            f"/financing/sessions/{started['session_ref']}/status-check",
            json={"token": started["status_check_token"]},
        )
        assert check.json()["state"] == "redirect"
        assert order.payments == ["txn-77"]


class TestUnknownApplication:
    def test_webhook_for_unknown_application_is_rejected(
        self,
        client: TestClient,
        container: Container,
        webhook_headers: dict[str, str],
    ) -> None:
        response = client.post(
            "/webhooks/avvance",
            json=loan_status_event(AUTHORIZED, application_id="never-created"),
            headers=webhook_headers,
        )

        assert response.status_code == 500
        assert asyncio.run(count_history_rows(container)) == 0


class TestDuplicateDelivery:
    """The same webhook delivered twice is applied once."""

    def test_second_delivery_is_recorded_as_duplicate(
        self,
        client: TestClient,
        admin_headers: dict[str, str],
        webhook_headers: dict[str, str],
        orders: InMemoryOrderGateway,
    ) -> None:
        started = checkout(client)
        body = loan_status_event(AUTHORIZED, application_id="app-1", transaction_id="txn-5")

        first = client.post("/webhooks/avvance", json=body, headers=webhook_headers)
        second = client.post("/webhooks/avvance", json=body, headers=webhook_headers)

        assert first.json()["status"] == "applied"
        assert second.json()["status"] == "duplicate"

        history = client.get(
            f"/admin/financing/sessions/{started['session_ref']}", headers=admin_headers
        ).json()["history"]
        webhook_entries = [entry for entry in history if entry["source"] == "webhook"]
        assert [entry["outcome"] for entry in webhook_entries] == ["applied", "duplicate"]
        assert orders.get("1001").payments == ["txn-5"]
