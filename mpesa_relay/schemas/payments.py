"""
Pydantic models for the relay's inbound requests and normalized responses.

Field names follow the camelCase keys used by the front-end and by Daraja.
"""

from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        populate_by_name=True, extra="ignore", coerce_numbers_to_str=True
    )


def _reject_boolean_amount(value: Any) -> Any:
    # Lax float parsing would read JSON true as 1.0.
    if isinstance(value, bool):
        raise ValueError("amount must be a number")
    return value


class ChargeRequest(_CamelModel):
    """Push-to-pay request. Presence checks happen in the relay service."""

    phone_number: Optional[str] = Field(None, alias="phoneNumber")
    amount: Optional[float] = Field(None, description="Amount in KES.")
    account_reference: Optional[str] = Field(None, alias="accountReference")
    transaction_desc: Optional[str] = Field(None, alias="transactionDesc")

    @field_validator("amount", mode="before")
    @classmethod
    def _amount_is_numeric(cls, value: Any) -> Any:
        return _reject_boolean_amount(value)


class ChargeResponse(_CamelModel):
    merchant_request_id: Optional[str] = Field(None, alias="merchantRequestID")
    checkout_request_id: Optional[str] = Field(None, alias="checkoutRequestID")
    response_code: Optional[str] = Field(None, alias="responseCode")
    response_description: Optional[str] = Field(None, alias="responseDescription")
    customer_message: Optional[str] = Field(None, alias="customerMessage")


class StatusQueryRequest(_CamelModel):
    checkout_request_id: Optional[str] = Field(None, alias="checkoutRequestID")


class TransactionReference(_CamelModel):
    """Existing transaction the payout settles."""

    id: str

    @model_validator(mode="before")
    @classmethod
    def _accept_bare_identifier(cls, value: Any) -> Any:
        """Support ``"transaction": "tx-1"`` as well as ``{"id": "tx-1"}``."""
        if isinstance(value, (str, int)):
            return {"id": str(value)}
        if isinstance(value, dict) and isinstance(value.get("id"), int):
            return {**value, "id": str(value["id"])}
        return value


class PayoutRequest(_CamelModel):
    """Business-to-customer disbursement request."""

    phone_number: Optional[str] = Field(None, alias="phoneNumber")
    amount: Optional[float] = Field(None, description="Amount in KES.")
    remarks: Optional[str] = None
    occasion: Optional[str] = None
    transaction: Optional[TransactionReference] = None
    final_project_id: Optional[Union[str, int]] = Field(None, alias="finalProjectId")
    originator_conversation_id: Optional[str] = Field(
        None,
        alias="originatorConversationID",
        description="Idempotency token forwarded to Daraja; generated when omitted.",
    )

    @field_validator("amount", mode="before")
    @classmethod
    def _amount_is_numeric(cls, value: Any) -> Any:
        return _reject_boolean_amount(value)


class PayoutResponse(_CamelModel):
    conversation_id: Optional[str] = Field(None, alias="conversationID")
    originator_conversation_id: Optional[str] = Field(
        None, alias="originatorConversationID"
    )
    response_code: Optional[str] = Field(None, alias="responseCode")
    response_description: Optional[str] = Field(None, alias="responseDescription")


class PhoneValidationRequest(_CamelModel):
    phone_number: Optional[str] = Field(None, alias="phoneNumber")


class PhoneValidationResponse(_CamelModel):
    original: str
    formatted: str
    is_valid: bool = Field(..., alias="isValid")


class CallbackAcknowledgement(_CamelModel):
    """Envelope returned to Daraja for every callback delivery."""

    result_code: int = Field(0, alias="resultCode")
    result_desc: str = Field("Accepted", alias="resultDesc")


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
