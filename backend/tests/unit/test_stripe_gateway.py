# backend/tests/unit/test_stripe_gateway.py
"""StripePaymentGateway translation of SDK calls and errors."""

from unittest.mock import patch

import pytest
import stripe

from app.integrations.stripe_gateway import (
    FakePaymentGateway,
    PaymentGatewayError,
    PaymentReferenceMissing,
    StripePaymentGateway,
    idempotency_key,
)

MODULE = "app.integrations.stripe_gateway.stripe"


@pytest.fixture
def gateway(monkeypatch) -> StripePaymentGateway:
    monkeypatch.setattr(stripe, "api_key", None, raising=False)
    monkeypatch.setattr(stripe, "default_http_client", None, raising=False)
    monkeypatch.setattr(stripe, "max_network_retries", 0, raising=False)
    return StripePaymentGateway(secret_key="sk_test_123")


class TestCreateAuthorization:
    def test_places_manual_capture_hold(self, gateway):
        intent = {"id": "pi_123", "status": "requires_capture", "amount": 4500}
        with patch(f"{MODULE}.PaymentIntent.create", return_value=intent) as create:
            result = gateway.create_authorization(
                amount=4500,
                currency="gbp",
                customer_ref="cus_1",
                payment_method_ref="pm_1",
                idempotency_key="booking:B1:authorize:g0",
            )

        assert result.ref == "pi_123"
        assert result.status == "requires_capture"
        kwargs = create.call_args.kwargs
        assert kwargs["capture_method"] == "manual"
        assert kwargs["off_session"] is True
        assert kwargs["payment_method"] == "pm_1"
        assert kwargs["idempotency_key"] == "booking:B1:authorize:g0"

    def test_requires_action_is_not_retryable(self, gateway):
        intent = {"id": "pi_123", "status": "requires_action", "amount": 4500}
        with patch(f"{MODULE}.PaymentIntent.create", return_value=intent):
            with pytest.raises(PaymentGatewayError) as exc_info:
                gateway.create_authorization(
                    amount=4500, currency="gbp", customer_ref="cus_1", idempotency_key="k"
                )

        assert exc_info.value.code == "requires_action"
        assert exc_info.value.retryable is False

    def test_charged_intent_is_not_accepted_as_hold(self, gateway):
        intent = {"id": "pi_123", "status": "succeeded", "amount": 4500}
        with patch(f"{MODULE}.PaymentIntent.create", return_value=intent):
            with pytest.raises(PaymentGatewayError) as exc_info:
                gateway.create_authorization(
                    amount=4500, currency="gbp", customer_ref="cus_1", idempotency_key="k"
                )

        assert exc_info.value.code == "unexpected_status"
        assert exc_info.value.retryable is False
        assert exc_info.value.details["ref"] == "pi_123"

    def test_processing_intent_is_retryable(self, gateway):
        intent = {"id": "pi_123", "status": "processing", "amount": 4500}
        with patch(f"{MODULE}.PaymentIntent.create", return_value=intent):
            with pytest.raises(PaymentGatewayError) as exc_info:
                gateway.create_authorization(
                    amount=4500, currency="gbp", customer_ref="cus_1", idempotency_key="k"
                )

        assert exc_info.value.retryable is True

    def test_connection_error_is_retryable(self, gateway):
        error = stripe.APIConnectionError("network down")
        with patch(f"{MODULE}.PaymentIntent.create", side_effect=error):
            with pytest.raises(PaymentGatewayError) as exc_info:
                gateway.create_authorization(
                    amount=4500, currency="gbp", customer_ref="cus_1", idempotency_key="k"
                )

        assert exc_info.value.retryable is True
        assert exc_info.value.status_code == 502


class TestCaptureAndRefund:
    def test_capture_passes_idempotency_key(self, gateway):
        intent = {"id": "pi_123", "status": "succeeded", "amount_received": 4500}
        with patch(f"{MODULE}.PaymentIntent.capture", return_value=intent) as capture:
            result = gateway.capture("pi_123", idempotency_key="booking:B1:capture")

        capture.assert_called_once_with("pi_123", idempotency_key="booking:B1:capture")
        assert result.amount == 4500

    def test_unknown_reference_is_reported_missing(self, gateway):
        error = stripe.InvalidRequestError(
            "No such payment_intent: 'pi_gone'", "intent", code="resource_missing"
        )
        with patch(f"{MODULE}.Refund.create", side_effect=error):
            with pytest.raises(PaymentReferenceMissing) as exc_info:
                gateway.refund("pi_gone", idempotency_key="booking:B1:refund")

        assert exc_info.value.retryable is False
        assert exc_info.value.details["ref"] == "pi_gone"

    def test_refund_returns_refund_id(self, gateway):
        with patch(f"{MODULE}.Refund.create", return_value={"id": "re_1"}) as create:
            assert gateway.refund("pi_123", idempotency_key="booking:B1:refund") == "re_1"

        assert create.call_args.kwargs["payment_intent"] == "pi_123"


class TestRetrieve:
    def test_returns_amount_and_metadata(self, gateway):
        intent = {
            "id": "pi_123",
            "status": "succeeded",
            "amount": 4500,
            "amount_received": 4500,
            "metadata": {"booking_id": "B1", "payer_id": "P1"},
        }
        with patch(f"{MODULE}.PaymentIntent.retrieve", return_value=intent) as retrieve:
            result = gateway.retrieve("pi_123")

        retrieve.assert_called_once_with("pi_123")
        assert result.status == "succeeded"
        assert result.amount == 4500
        assert result.metadata == {"booking_id": "B1", "payer_id": "P1"}

    def test_missing_metadata_is_empty(self, gateway):
        intent = {"id": "pi_123", "status": "requires_capture", "amount": 4500, "metadata": None}
        with patch(f"{MODULE}.PaymentIntent.retrieve", return_value=intent):
            assert gateway.retrieve("pi_123").metadata == {}


class TestFakePaymentGateway:
    def test_repeated_key_returns_first_result(self):
        fake = FakePaymentGateway()
        key = idempotency_key("B1", "authorize:g0")

        first = fake.create_authorization(
            amount=4500, currency="gbp", customer_ref="cus_1", idempotency_key=key
        )
        second = fake.create_authorization(
            amount=4500, currency="gbp", customer_ref="cus_1", idempotency_key=key
        )

        assert first == second
        assert len(fake.intents) == 1

    def test_failed_call_is_not_cached(self):
        fake = FakePaymentGateway()
        fake.add_intent("pi_1", amount=100, status="requires_capture")
        fake.fail_next("capture", PaymentGatewayError("declined"))

        with pytest.raises(PaymentGatewayError):
            fake.capture("pi_1", idempotency_key="booking:B1:capture")
        result = fake.capture("pi_1", idempotency_key="booking:B1:capture")

        assert result.status == "succeeded"

    def test_retrieve_reports_metadata_given_at_authorization(self):
        fake = FakePaymentGateway()
        hold = fake.create_authorization(
            amount=4500,
            currency="gbp",
            customer_ref="cus_1",
            idempotency_key=idempotency_key("B1", "authorize:g0"),
            metadata={"booking_id": "B1"},
        )

        result = fake.retrieve(hold.ref)

        assert result.amount == 4500
        assert result.status == "requires_capture"
        assert result.metadata == {"booking_id": "B1"}
