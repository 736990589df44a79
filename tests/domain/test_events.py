"""Tests for webhook event decoding and status updates."""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from avvance.domain.events import (
    EventSource,
    LoanStatusEvent,
    PreApprovalLeadEvent,
    StatusUpdate,
    UnknownEvent,
    decode_webhook_event,
    extract_max_amount,
    parse_timestamp,
)
from avvance.domain.exceptions import MalformedEventError

RECEIVED_AT = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


class TestDecodeLoanStatus:
    """Tests for LOAN_STATUS decoding."""

    def test_decodes_all_fields(self) -> None:
        event = decode_webhook_event(
            "LOAN_STATUS",
            {
                "applicationGUID": "app-1",
                "partnerSessionId": "ps-1",
                "loanStatus": {"status": "INVOICE_PAYMENT_TRANSACTION_AUTHORIZED"},
                "paymentTransactionId": "txn-9",
                "approvalCode": "A123",
            },
        )
        assert isinstance(event, LoanStatusEvent)
        assert event.remote_status == "INVOICE_PAYMENT_TRANSACTION_AUTHORIZED"
        assert event.correlation_ids == ["app-1", "ps-1"]
        assert event.payment_transaction_id == "txn-9"
        assert event.approval_code == "A123"

    def test_event_name_is_case_insensitive(self) -> None:
        event = decode_webhook_event(
            "loan_status",
            {"applicationGUID": "app-1", "loanStatus": {"status": "APPLICATION_STARTED"}},
        )
        assert isinstance(event, LoanStatusEvent)

    def test_missing_status_is_malformed(self) -> None:
        with pytest.raises(MalformedEventError):
            decode_webhook_event("LOAN_STATUS", {"applicationGUID": "app-1"})

    def test_missing_correlation_ids_is_malformed(self) -> None:
        with pytest.raises(MalformedEventError):
            decode_webhook_event(
                "LOAN_STATUS", {"loanStatus": {"status": "APPLICATION_STARTED"}}
            )

    def test_blank_correlation_ids_are_ignored(self) -> None:
        event = decode_webhook_event(
            "LOAN_STATUS",
            {
                "applicationGUID": "  ",
                "partnerSessionId": "ps-1",
                "loanStatus": {"status": "APPLICATION_STARTED"},
            },
        )
        assert event.correlation_ids == ["ps-1"]


class TestDecodePreApprovalLead:
    """Tests for PRE_APPROVAL_LEAD decoding."""

    def test_decodes_lead(self) -> None:
        event = decode_webhook_event(
            "PRE_APPROVAL_LEAD",
            {
                "preApprovalRequestId": "req-1",
                "leadid": "lead-7",
                "leadstatus": "PRE_APPROVED",
                "customerName": "Jane Doe",
                "customerEmail": "jane@example.com",
                "customerPhone": "(555) 123-4567",
                "leadExpiryDate": "2026-12-31T00:00:00Z",
                "metadata": [{"key": "maxPreApprovedAmount", "value": "7500.00"}],
            },
        )
        assert isinstance(event, PreApprovalLeadEvent)
        assert event.request_id == "req-1"
        assert event.lead_id == "lead-7"
        assert event.remote_status == "PRE_APPROVED"
        assert event.max_amount == Decimal("7500.00")
        assert event.expires_at == datetime(2026, 12, 31, tzinfo=timezone.utc)

    def test_missing_request_id_is_malformed(self) -> None:
        with pytest.raises(MalformedEventError):
            decode_webhook_event("PRE_APPROVAL_LEAD", {"leadstatus": "PRE_APPROVED"})


class TestUnknownEvent:
    def test_unknown_event_is_passed_through(self) -> None:
        event = decode_webhook_event("MERCHANT_UPDATED", {"foo": "bar"})
        assert isinstance(event, UnknownEvent)
        assert event.raw_event_name == "MERCHANT_UPDATED"

    def test_unrecognized_name_with_loan_details_is_loan_status(self) -> None:
        event = decode_webhook_event(
            "loanApplicationUpdate",
            {
                "applicationGUID": "app-1",
                "loanStatus": {"status": "INVOICE_PAYMENT_TRANSACTION_AUTHORIZED"},
                "paymentTransactionId": "txn-1",
            },
        )
        assert isinstance(event, LoanStatusEvent)
        assert event.payment_transaction_id == "txn-1"

    @pytest.mark.parametrize("key", ["preApprovalRequestId", "preApprovalRequestID"])
    def test_unrecognized_name_with_lead_details_is_lead(self, key: str) -> None:
        event = decode_webhook_event("leadUpdate", {key: "req-1", "leadstatus": "PRE_APPROVED"})
        assert isinstance(event, PreApprovalLeadEvent)
        assert event.request_id == "req-1"

    def test_lead_keys_take_precedence(self) -> None:
        event = decode_webhook_event(
            "UPDATE",
            {"preApprovalRequestId": "req-1", "leadstatus": "DECLINED", "partnerSessionId": "ps-1"},
        )
        assert isinstance(event, PreApprovalLeadEvent)

    def test_unrecognized_name_with_broken_loan_details_is_malformed(self) -> None:
        with pytest.raises(MalformedEventError):
            decode_webhook_event("UPDATE", {"applicationGUID": "app-1"})


class TestHelpers:
    """Tests for metadata and timestamp parsing."""

    def test_max_amount_from_metadata_list(self) -> None:
        details = {"metadata": [{"key": "other", "value": "1"}, {"key": "maxPreApprovedAmount", "value": 2500}]}
        assert extract_max_amount(details) == Decimal("2500")

    def test_max_amount_rejects_garbage(self) -> None:
        assert extract_max_amount({"metadata": [{"key": "maxPreApprovedAmount", "value": "lots"}]}) is None
        assert extract_max_amount({"metadata": [{"key": "maxPreApprovedAmount", "value": "NaN"}]}) is None
        assert extract_max_amount({}) is None

    def test_naive_timestamp_is_utc(self) -> None:
        assert parse_timestamp("2026-01-02T03:04:05") == datetime(
            2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc
        )

    def test_bad_timestamp_is_none(self) -> None:
        assert parse_timestamp("not a date") is None
        assert parse_timestamp(None) is None


class TestStatusUpdate:
    """Tests for building reconciler input."""

    def test_from_webhook(self) -> None:
        event = decode_webhook_event(
            "LOAN_STATUS",
            {
                "applicationGUID": "app-1",
                "loanStatus": {"status": "APPLICATION_APPROVED"},
            },
        )
        update = StatusUpdate.from_webhook(event, RECEIVED_AT)
        assert update.source == EventSource.WEBHOOK
        assert update.correlation_ids == ("app-1",)
        assert update.remote_status == "APPLICATION_APPROVED"
        assert update.received_at == RECEIVED_AT

    def test_from_status_response(self) -> None:
        response = {
            "eventName": "LOAN_STATUS",
            "eventDetails": {
                "loanStatus": {"status": "INVOICE_PAYMENT_TRANSACTION_SETTLED"},
                "paymentTransactionId": "txn-1",
            },
        }
        update = StatusUpdate.from_status_response([None, "ps-1"], response, RECEIVED_AT)
        assert update.source == EventSource.POLL
        assert update.correlation_ids == ("ps-1",)
        assert update.payment_transaction_id == "txn-1"

    def test_status_response_without_status_is_malformed(self) -> None:
        with pytest.raises(MalformedEventError):
            StatusUpdate.from_status_response(["app-1"], {"eventDetails": {}}, RECEIVED_AT)
