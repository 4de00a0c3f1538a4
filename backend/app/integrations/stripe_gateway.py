"""Stripe payment gateway adapter.

Thin wrapper over the Stripe PaymentIntent/Refund API used by the booking
engine. Every mutating call takes an idempotency key so a retried
scheduler run never charges twice. Stripe errors are translated into
PaymentGatewayError so callers never handle SDK exceptions directly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any, Dict, List, Optional, Protocol

from pydantic import SecretStr
import stripe

from ..core.constants import PAYMENT_REQUIRES_ACTION_ERROR
from ..core.exceptions import UpstreamGatewayException
from ..domain.payment_state import is_valid_payment_reference

logger = logging.getLogger(__name__)

RESOURCE_MISSING_CODES = frozenset({"resource_missing"})


class PaymentGatewayError(UpstreamGatewayException):
    """Raised when the payment gateway rejects or fails a call."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        *,
        retryable: bool = True,
    ) -> None:
        super().__init__(
            message, code=code or "payment_gateway_error", details=details, retryable=retryable
        )


class PaymentReferenceMissing(PaymentGatewayError):
    """The gateway does not know the reference (legacy or foreign id)."""

    def __init__(self, ref: str, message: str = "Payment reference not found at gateway") -> None:
        super().__init__(message, code="resource_missing", details={"ref": ref}, retryable=False)


@dataclass(frozen=True)
class GatewayResult:
    ref: str
    status: str
    amount: Optional[int] = None
    metadata: Dict[str, str] = field(default_factory=dict)


def idempotency_key(booking_id: str, stage: str) -> str:
    """Gateway idempotency key for one payment stage of one booking."""
    return f"booking:{booking_id}:{stage}"


class PaymentGateway(Protocol):
    def create_authorization(
        self,
        *,
        amount: int,
        currency: str,
        customer_ref: str,
        idempotency_key: str,
        payment_method_ref: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> GatewayResult:
        ...

    def capture(self, ref: str, *, idempotency_key: str) -> GatewayResult:
        ...

    def cancel_authorization(self, ref: str, *, idempotency_key: Optional[str] = None) -> None:
        ...

    def refund(
        self,
        ref: str,
        *,
        reason: str = "requested_by_customer",
        idempotency_key: Optional[str] = None,
    ) -> str:
        ...

    def retrieve(self, ref: str) -> GatewayResult:
        ...


class StripePaymentGateway:
    """PaymentGateway backed by the Stripe SDK."""

    def __init__(self, *, secret_key: str | SecretStr, timeout: float = 20.0) -> None:
        key = secret_key.get_secret_value() if isinstance(secret_key, SecretStr) else secret_key
        if key:
            stripe.api_key = key
        else:
            logger.warning("Stripe secret key not configured - gateway calls will fail")
        try:
            stripe.default_http_client = stripe.RequestsClient(timeout=timeout)
        except AttributeError:
            logger.debug("Stripe SDK has no RequestsClient export; keeping the default HTTP client")
        stripe.max_network_retries = 1

    @staticmethod
    def _translate(exc: stripe.StripeError, *, ref: Optional[str] = None) -> PaymentGatewayError:
        code = getattr(exc, "code", None)
        message = getattr(exc, "user_message", None) or str(exc)
        if code in RESOURCE_MISSING_CODES and ref:
            return PaymentReferenceMissing(ref, message)
        retryable = not isinstance(exc, (stripe.CardError, stripe.InvalidRequestError))
        return PaymentGatewayError(
            message,
            code=code or exc.__class__.__name__,
            details={"http_status": getattr(exc, "http_status", None), "ref": ref},
            retryable=retryable,
        )

    @staticmethod
    def _result(intent: Any) -> GatewayResult:
        return GatewayResult(
            ref=intent["id"],
            status=intent["status"],
            amount=intent.get("amount_received") or intent.get("amount"),
        )

    def create_authorization(
        self,
        *,
        amount: int,
        currency: str,
        customer_ref: str,
        idempotency_key: str,
        payment_method_ref: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> GatewayResult:
        """Place an off-session manual-capture hold on the payer's saved method."""
        params: Dict[str, Any] = {
            "amount": amount,
            "currency": currency,
            "customer": customer_ref,
            "capture_method": "manual",
            "confirm": True,
            "off_session": True,
            "metadata": metadata or {},
            "idempotency_key": idempotency_key,
        }
        if payment_method_ref:
            params["payment_method"] = payment_method_ref
        try:
            intent = stripe.PaymentIntent.create(**params)
        except stripe.CardError as exc:
            error = getattr(exc, "error", None)
            if getattr(error, "code", None) == "authentication_required":
                raise PaymentGatewayError(
                    PAYMENT_REQUIRES_ACTION_ERROR, code="requires_action", retryable=False
                ) from exc
            raise self._translate(exc) from exc
        except stripe.StripeError as exc:
            raise self._translate(exc) from exc

        result = self._result(intent)
        if result.status == "requires_action":
            raise PaymentGatewayError(
                PAYMENT_REQUIRES_ACTION_ERROR,
                code="requires_action",
                details={"ref": result.ref},
                retryable=False,
            )
        if result.status != "requires_capture":
            # a charged intent cannot be captured again; leave it to reconciliation
            raise PaymentGatewayError(
                f"Unexpected authorization status: {result.status}",
                code="unexpected_status",
                details={"ref": result.ref},
                retryable=result.status != "succeeded",
            )
        return result

    def capture(self, ref: str, *, idempotency_key: str) -> GatewayResult:
        try:
            intent = stripe.PaymentIntent.capture(ref, idempotency_key=idempotency_key)
        except stripe.StripeError as exc:
            raise self._translate(exc, ref=ref) from exc
        result = self._result(intent)
        if result.status != "succeeded":
            raise PaymentGatewayError(
                f"Capture did not succeed: {result.status}",
                code="capture_incomplete",
                details={"ref": ref},
            )
        return result

    def cancel_authorization(self, ref: str, *, idempotency_key: Optional[str] = None) -> None:
        try:
            stripe.PaymentIntent.cancel(ref, idempotency_key=idempotency_key)
        except stripe.StripeError as exc:
            raise self._translate(exc, ref=ref) from exc

    def refund(
        self,
        ref: str,
        *,
        reason: str = "requested_by_customer",
        idempotency_key: Optional[str] = None,
    ) -> str:
        try:
            refund = stripe.Refund.create(
                payment_intent=ref, reason=reason, idempotency_key=idempotency_key
            )
        except stripe.StripeError as exc:
            raise self._translate(exc, ref=ref) from exc
        return str(refund["id"])

    def retrieve(self, ref: str) -> GatewayResult:
        """Current status, requested amount and metadata of an intent."""
        try:
            intent = stripe.PaymentIntent.retrieve(ref)
        except stripe.StripeError as exc:
            raise self._translate(exc, ref=ref) from exc
        metadata = intent.get("metadata") or {}
        return GatewayResult(
            ref=intent["id"],
            status=str(intent["status"]),
            amount=intent.get("amount"),
            metadata={str(key): str(value) for key, value in metadata.items()},
        )


@dataclass
class _FakeIntent:
    ref: str
    amount: int
    status: str
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class FakePaymentGateway:
    """In-memory gateway for local development and tests.

    Idempotency keys are honoured the way Stripe honours them: a repeated
    key returns the first result without a second effect.
    """

    intents: Dict[str, _FakeIntent] = field(default_factory=dict)
    refunds: Dict[str, str] = field(default_factory=dict)
    calls: List[Dict[str, Any]] = field(default_factory=list)
    _errors: Dict[str, List[PaymentGatewayError]] = field(default_factory=dict)
    _idempotent: Dict[str, Any] = field(default_factory=dict)
    _counter: int = 0

    def fail_next(self, method: str, error: PaymentGatewayError, times: int = 1) -> None:
        """Queue ``times`` failures for ``method``."""
        self._errors.setdefault(method, []).extend([error] * times)

    def _maybe_fail(self, method: str) -> None:
        queued = self._errors.get(method)
        if queued:
            raise queued.pop(0)

    def _next_ref(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_fake{self._counter:06d}"

    def add_intent(
        self, ref: str, *, amount: int, status: str, booking_id: Optional[str] = None
    ) -> None:
        metadata = {"booking_id": booking_id} if booking_id else {}
        self.intents[ref] = _FakeIntent(ref=ref, amount=amount, status=status, metadata=metadata)

    def calls_for(self, method: str) -> List[Dict[str, Any]]:
        return [call for call in self.calls if call["method"] == method]

    def create_authorization(
        self,
        *,
        amount: int,
        currency: str,
        customer_ref: str,
        idempotency_key: str,
        payment_method_ref: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> GatewayResult:
        self.calls.append(
            {
                "method": "create_authorization",
                "amount": amount,
                "customer": customer_ref,
                "key": idempotency_key,
            }
        )
        if idempotency_key in self._idempotent:
            return self._idempotent[idempotency_key]
        self._maybe_fail("create_authorization")
        ref = self._next_ref("pi")
        self.intents[ref] = _FakeIntent(
            ref=ref, amount=amount, status="requires_capture", metadata=dict(metadata or {})
        )
        result = GatewayResult(ref=ref, status="requires_capture", amount=amount)
        self._idempotent[idempotency_key] = result
        return result

    def capture(self, ref: str, *, idempotency_key: str) -> GatewayResult:
        self.calls.append({"method": "capture", "ref": ref, "key": idempotency_key})
        if idempotency_key in self._idempotent:
            return self._idempotent[idempotency_key]
        self._maybe_fail("capture")
        intent = self.intents.get(ref)
        if intent is None:
            raise PaymentReferenceMissing(ref)
        intent.status = "succeeded"
        result = GatewayResult(ref=ref, status="succeeded", amount=intent.amount)
        self._idempotent[idempotency_key] = result
        return result

    def cancel_authorization(self, ref: str, *, idempotency_key: Optional[str] = None) -> None:
        self.calls.append({"method": "cancel_authorization", "ref": ref, "key": idempotency_key})
        self._maybe_fail("cancel_authorization")
        intent = self.intents.get(ref)
        if intent is None:
            raise PaymentReferenceMissing(ref)
        intent.status = "canceled"

    def refund(
        self,
        ref: str,
        *,
        reason: str = "requested_by_customer",
        idempotency_key: Optional[str] = None,
    ) -> str:
        self.calls.append(
            {"method": "refund", "ref": ref, "reason": reason, "key": idempotency_key}
        )
        if idempotency_key and idempotency_key in self._idempotent:
            return self._idempotent[idempotency_key]
        self._maybe_fail("refund")
        if ref not in self.intents:
            raise PaymentReferenceMissing(ref)
        refund_ref = self._next_ref("re")
        self.refunds[refund_ref] = ref
        if idempotency_key:
            self._idempotent[idempotency_key] = refund_ref
        return refund_ref

    def retrieve(self, ref: str) -> GatewayResult:
        self.calls.append({"method": "retrieve", "ref": ref})
        self._maybe_fail("retrieve")
        intent = self.intents.get(ref)
        if intent is None:
            raise PaymentReferenceMissing(ref)
        return GatewayResult(
            ref=ref, status=intent.status, amount=intent.amount, metadata=dict(intent.metadata)
        )


__all__ = [
    "FakePaymentGateway",
    "GatewayResult",
    "PaymentGateway",
    "PaymentGatewayError",
    "PaymentReferenceMissing",
    "StripePaymentGateway",
    "idempotency_key",
    "is_valid_payment_reference",
]
