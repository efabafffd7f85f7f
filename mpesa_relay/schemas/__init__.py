"""Public schema exports."""

from .payments import (
    CallbackAcknowledgement,
    ChargeRequest,
    ChargeResponse,
    PayoutRequest,
    PayoutResponse,
    PhoneValidationRequest,
    PhoneValidationResponse,
    StatusQueryRequest,
    TransactionReference,
)

__all__ = [
    "CallbackAcknowledgement",
    "ChargeRequest",
    "ChargeResponse",
    "PayoutRequest",
    "PayoutResponse",
    "PhoneValidationRequest",
    "PhoneValidationResponse",
    "StatusQueryRequest",
    "TransactionReference",
]
