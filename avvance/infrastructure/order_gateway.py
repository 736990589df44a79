"""Access to the external e-commerce order store.

The reconciler only needs a handful of order operations; they are
expressed as the OrderGateway port. The in-memory adapter backs local
development and tests, the HTTP adapter talks to a storefront API.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import httpx
import structlog

logger = structlog.get_logger()


class OrderGatewayError(Exception):
    """Error from an order store call."""

    def __init__(self, order_id: str, message: str, status_code: int | None = None) -> None:
        self.order_id = order_id
        self.message = message
        self.status_code = status_code
        super().__init__(f"[order {order_id}] {message}")


class OrderGateway(ABC):
    """Order operations used by financing flows."""

    def __init__(self, return_url_template: str) -> None:
        self.return_url_template = return_url_template

    @abstractmethod
    async def is_paid(self, order_id: str) -> bool:
        """Check whether the order is already paid."""

    @abstractmethod
    async def mark_paid(self, order_id: str, transaction_id: str | None) -> bool:
        """Mark the order paid.

        Calling this for an order that is already paid is a no-op. A
        cancelled order is reinstated by the payment.

        Returns:
            True if the order changed to paid, False if it already was.
        """

    @abstractmethod
    async def cancel(self, order_id: str, reason: str) -> None:
        """Cancel an unpaid order."""

    @abstractmethod
    async def add_note(self, order_id: str, note: str) -> None:
        """Attach a note to the order."""

    def return_url(self, order_id: str) -> str:
        """URL the customer is sent to once financing succeeds."""
        return self.return_url_template.format(order_id=order_id)


# ============================================================================
# In-memory adapter
# ============================================================================


@dataclass
class OrderRecord:
    """Order state held by the in-memory adapter."""

    order_id: str
    paid: bool = False
    cancelled: bool = False
    transaction_id: str | None = None
    cancel_reason: str | None = None
    notes: list[str] = field(default_factory=list)
    payments: list[str | None] = field(default_factory=list)


class InMemoryOrderGateway(OrderGateway):
    """Order store kept in process memory."""

    def __init__(self, return_url_template: str = "/checkout/order-received/{order_id}") -> None:
        super().__init__(return_url_template)
        self.orders: dict[str, OrderRecord] = {}

    def get(self, order_id: str) -> OrderRecord:
        """Get (or lazily create) an order record."""
        if order_id not in self.orders:
            self.orders[order_id] = OrderRecord(order_id=order_id)
        return self.orders[order_id]

    async def is_paid(self, order_id: str) -> bool:
        return self.get(order_id).paid

    async def mark_paid(self, order_id: str, transaction_id: str | None) -> bool:
        order = self.get(order_id)
        if order.paid:
            return False
        order.paid = True
        order.cancelled = False
        order.cancel_reason = None
        order.transaction_id = transaction_id
        order.payments.append(transaction_id)
        return True

    async def cancel(self, order_id: str, reason: str) -> None:
        order = self.get(order_id)
        order.cancelled = True
        order.cancel_reason = reason

    async def add_note(self, order_id: str, note: str) -> None:
        self.get(order_id).notes.append(note)


# ============================================================================
# Storefront HTTP adapter
# ============================================================================


class HttpOrderGateway(OrderGateway):
    """Order store reached through the storefront's REST API."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        return_url_template: str,
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize storefront gateway.

        Args:
            base_url: Storefront API base URL.
            api_key: Bearer key for the storefront API.
            return_url_template: Order-received URL with ``{order_id}``.
            timeout: Request timeout in seconds.
            http_client: Optional pre-built client.
        """
        super().__init__(return_url_template)
        self.base_url = base_url
        self.api_key = api_key
        self.timeout = timeout
        self._client = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _call(
        self,
        order_id: str,
        method: str,
        path: str,
        json_body: dict | None = None,
    ) -> httpx.Response:
        try:
            client = await self._get_client()
            response = await client.request(method, path, json=json_body)
        except httpx.RequestError as e:
            logger.warning("Storefront request failed", order_id=order_id, error=str(e))
            raise OrderGatewayError(order_id, f"Request failed: {e}") from e

        if response.status_code >= 400:
            raise OrderGatewayError(
                order_id,
                f"Storefront returned {response.status_code}",
                response.status_code,
            )
        return response

    async def is_paid(self, order_id: str) -> bool:
        response = await self._call(order_id, "GET", f"/orders/{order_id}")
        try:
            data = response.json()
        except ValueError as e:
            raise OrderGatewayError(order_id, "Invalid order response") from e
        return bool(data.get("paid")) or data.get("status") in ("processing", "completed")

    async def mark_paid(self, order_id: str, transaction_id: str | None) -> bool:
        if await self.is_paid(order_id):
            logger.info("Order already paid", order_id=order_id)
            return False
        await self._call(
            order_id,
            "POST",
            f"/orders/{order_id}/payment",
            {"transaction_id": transaction_id},
        )
        return True

    async def cancel(self, order_id: str, reason: str) -> None:
        await self._call(order_id, "POST", f"/orders/{order_id}/cancel", {"reason": reason})

    async def add_note(self, order_id: str, note: str) -> None:
        await self._call(order_id, "POST", f"/orders/{order_id}/notes", {"note": note})
