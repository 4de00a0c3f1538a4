"""External service integrations for the Tipu platform."""

from .graph_meetings_client import (
    FakeMeetingsClient,
    GraphMeetingsClient,
    MeetingDetails,
    MeetingProvider,
    MeetingProviderError,
)
from .stripe_gateway import (
    FakePaymentGateway,
    GatewayResult,
    PaymentGateway,
    PaymentGatewayError,
    PaymentReferenceMissing,
    StripePaymentGateway,
    idempotency_key,
)

__all__ = [
    "FakeMeetingsClient",
    "FakePaymentGateway",
    "GatewayResult",
    "GraphMeetingsClient",
    "MeetingDetails",
    "MeetingProvider",
    "MeetingProviderError",
    "PaymentGateway",
    "PaymentGatewayError",
    "PaymentReferenceMissing",
    "StripePaymentGateway",
    "idempotency_key",
]
