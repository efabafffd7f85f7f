"""
Payment relay between the platform and M-Pesa.

Builds Daraja payloads for charges, status queries and payouts, and reconciles
the asynchronous result callbacks against the record store.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence
from uuid import uuid4

from mpesa_relay.clients.daraja import DarajaClient, generate_password
from mpesa_relay.clients.record_store import SQLiteRecordStore
from mpesa_relay.core.config import MpesaSettings
from mpesa_relay.models.transaction import TransactionStatus
from mpesa_relay.schemas import (
    ChargeRequest,
    ChargeResponse,
    PayoutRequest,
    PayoutResponse,
    StatusQueryRequest,
)
from mpesa_relay.services.token_cache import AccessTokenCache
from mpesa_relay.utils.phone import format_phone_number

logger = logging.getLogger(__name__)

STK_TRANSACTION_TYPE = "CustomerPayBillOnline"
DEFAULT_ACCOUNT_REFERENCE = "Payment"
DEFAULT_TRANSACTION_DESC = "Payment for services"
DEFAULT_PAYOUT_REMARKS = "Payment to freelancer"
DEFAULT_PAYOUT_OCCASION = "Freelancer Payment"


class PaymentValidationError(Exception):
    """Raised for terminal input errors; never retried."""


class PaymentConfigurationError(Exception):
    """Raised when required provider credentials are not configured."""


class MalformedCallbackError(Exception):
    """Raised when a provider callback body cannot be interpreted."""


@dataclass(slots=True)
class ChargeResult:
    """Parsed push-to-pay callback."""

    merchant_request_id: Optional[str]
    checkout_request_id: Optional[str]
    result_code: int
    result_desc: Optional[str]
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.result_code == 0


@dataclass(slots=True)
class PayoutResult:
    """Parsed B2C result callback."""

    conversation_id: str
    originator_conversation_id: Optional[str]
    result_code: int
    result_desc: Optional[str]
    parameters: Dict[str, Any] = field(default_factory=dict)
    updated_records: int = 0

    @property
    def succeeded(self) -> bool:
        return self.result_code == 0


@dataclass(slots=True)
class PayoutContext:
    """What post-payout hooks get to see once Daraja accepted a payout."""

    transaction_id: str
    final_project_id: Optional[str]
    conversation_id: Optional[str]
    provider_response: Dict[str, Any]


@dataclass(slots=True)
class PayoutOutcome:
    response: PayoutResponse
    side_effect_failures: List[str] = field(default_factory=list)


PayoutHook = Callable[[PayoutContext], Awaitable[None]]
ChargeCallbackHook = Callable[[ChargeResult], Awaitable[None]]


def complete_linked_project(store: SQLiteRecordStore) -> PayoutHook:
    """Hook that marks the payout's linked project as completed."""

    async def complete_project_hook(context: PayoutContext) -> None:
        if not context.final_project_id:
            return
        project = store.complete_project(context.final_project_id)
        logger.info("Project %s status updated to %s", project.id, project.status)

    return complete_project_hook


def _round_amount(amount: float) -> int:
    # Daraja rejects decimals; round half up like a till would.
    return int(Decimal(str(amount)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _validated_amount(amount: Optional[float], minimum: int, label: str) -> int:
    if amount is None or not math.isfinite(amount):
        raise PaymentValidationError("Phone number and amount are required")
    if amount < minimum:
        raise PaymentValidationError(f"{label} must be at least {minimum} KES")
    return _round_amount(amount)


def _result_code(raw: Any) -> int:
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise MalformedCallbackError(f"Invalid ResultCode: {raw!r}") from exc


def _flatten_items(items: Any, *, key_field: str, value_field: str) -> Dict[str, Any]:
    """Turn Daraja's ``[{Name|Key: ..., Value: ...}]`` lists into a mapping."""
    if isinstance(items, dict):
        items = [items]
    flattened: Dict[str, Any] = {}
    for item in items or []:
        if isinstance(item, dict) and item.get(key_field) is not None:
            flattened[item[key_field]] = item.get(value_field)
    return flattened


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentRelay:
    """Shape provider requests and reconcile provider callbacks."""

    def __init__(
        self,
        *,
        daraja_client: DarajaClient,
        token_cache: AccessTokenCache,
        record_store: SQLiteRecordStore,
        settings: MpesaSettings,
        post_payout_hooks: Optional[Sequence[PayoutHook]] = None,
        charge_callback_hooks: Sequence[ChargeCallbackHook] = (),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._daraja = daraja_client
        self._tokens = token_cache
        self._store = record_store
        self._settings = settings
        self._clock = clock
        if post_payout_hooks is None:
            post_payout_hooks = [complete_linked_project(record_store)]
        self._post_payout_hooks = list(post_payout_hooks)
        self._charge_callback_hooks = list(charge_callback_hooks)

    def _callback_url(self, suffix: str) -> str:
        return f"{self._settings.callback_base_url}/callback/{suffix}"

    def _signed_fields(self) -> Dict[str, str]:
        password, timestamp = generate_password(
            self._settings.short_code, self._settings.pass_key, self._clock()
        )
        return {
            "BusinessShortCode": self._settings.short_code,
            "Password": password,
            "Timestamp": timestamp,
        }

    async def initiate_charge(self, request: ChargeRequest) -> ChargeResponse:
        """Send a push-to-pay prompt to the payer's phone."""
        if not request.phone_number or not request.amount:
            raise PaymentValidationError("Phone number and amount are required")
        amount = _validated_amount(
            request.amount, self._settings.charge_minimum_amount, "Amount"
        )

        access_token = await self._tokens.get_token()
        phone = format_phone_number(request.phone_number)

        payload = {
            **self._signed_fields(),
            "TransactionType": STK_TRANSACTION_TYPE,
            "Amount": amount,
            "PartyA": phone,
            "PartyB": self._settings.short_code,
            "PhoneNumber": phone,
            "CallBackURL": self._callback_url("charge"),
            "AccountReference": request.account_reference or DEFAULT_ACCOUNT_REFERENCE,
            "TransactionDesc": request.transaction_desc or DEFAULT_TRANSACTION_DESC,
        }
        data = await self._daraja.stk_push(payload, access_token=access_token)
        logger.info(
            "STK push accepted: checkout=%s response=%s",
            data.get("CheckoutRequestID"),
            data.get("ResponseCode"),
        )
        return ChargeResponse(
            merchantRequestID=data.get("MerchantRequestID"),
            checkoutRequestID=data.get("CheckoutRequestID"),
            responseCode=data.get("ResponseCode"),
            responseDescription=data.get("ResponseDescription"),
            customerMessage=data.get("CustomerMessage"),
        )

    async def query_charge(self, request: StatusQueryRequest) -> Dict[str, Any]:
        """Return Daraja's raw status payload for a push-to-pay request."""
        if not request.checkout_request_id:
            raise PaymentValidationError("CheckoutRequestID is required")

        access_token = await self._tokens.get_token()
        payload = {
            **self._signed_fields(),
            "CheckoutRequestID": request.checkout_request_id,
        }
        return await self._daraja.stk_query(payload, access_token=access_token)

    async def initiate_payout(self, request: PayoutRequest) -> PayoutOutcome:
        """
        Disburse funds to a recipient and settle the referenced transaction.

        Once Daraja accepts the payout the transaction is marked released and
        the post-payout hooks run. Neither step can fail the payout: errors are
        logged and reported on the outcome.
        """
        if not request.phone_number or not request.amount:
            raise PaymentValidationError("Phone number and amount are required")
        amount = _validated_amount(
            request.amount, self._settings.payout_minimum_amount, "Minimum B2C amount"
        )
        if request.transaction is None:
            raise PaymentValidationError("Transaction reference is required")
        if not self._settings.initiator_name or not self._settings.security_credential:
            raise PaymentConfigurationError(
                "B2C initiator name and security credential are not configured"
            )

        access_token = await self._tokens.get_token()
        phone = format_phone_number(request.phone_number)
        originator_id = request.originator_conversation_id or uuid4().hex

        payload = {
            "OriginatorConversationID": originator_id,
            "InitiatorName": self._settings.initiator_name,
            "SecurityCredential": self._settings.security_credential,
            "CommandID": self._settings.b2c_command_id,
            "Amount": amount,
            "PartyA": self._settings.short_code,
            "PartyB": phone,
            "Remarks": request.remarks or DEFAULT_PAYOUT_REMARKS,
            "QueueTimeOutURL": self._callback_url("payout-timeout"),
            "ResultURL": self._callback_url("payout-result"),
            "Occasion": request.occasion or DEFAULT_PAYOUT_OCCASION,
        }
        data = await self._daraja.b2c_payment_request(payload, access_token=access_token)
        conversation_id = data.get("ConversationID")
        logger.info(
            "B2C payment accepted: conversation=%s originator=%s",
            conversation_id,
            data.get("OriginatorConversationID", originator_id),
        )

        failures: List[str] = []
        transaction_id = request.transaction.id
        try:
            self._store.update_transaction(
                transaction_id,
                {
                    "status": TransactionStatus.RELEASED,
                    "mpesa_conversation_id": conversation_id,
                },
            )
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception("Failed to mark transaction %s released", transaction_id)
            failures.append(f"transaction_update: {exc}")

        context = PayoutContext(
            transaction_id=transaction_id,
            final_project_id=(
                str(request.final_project_id)
                if request.final_project_id is not None
                else None
            ),
            conversation_id=conversation_id,
            provider_response=data,
        )
        failures.extend(await self._run_post_payout_hooks(context))

        return PayoutOutcome(
            response=PayoutResponse(
                conversationID=conversation_id,
                originatorConversationID=data.get(
                    "OriginatorConversationID", originator_id
                ),
                responseCode=data.get("ResponseCode"),
                responseDescription=data.get("ResponseDescription"),
            ),
            side_effect_failures=failures,
        )

    async def _run_post_payout_hooks(self, context: PayoutContext) -> List[str]:
        failures: List[str] = []
        for hook in self._post_payout_hooks:
            name = getattr(hook, "__name__", repr(hook))
            try:
                await hook(context)
            except Exception as exc:  # pylint: disable=broad-except
                logger.error(
                    "Post-payout hook %s failed for transaction %s: %s",
                    name,
                    context.transaction_id,
                    exc,
                )
                failures.append(f"{name}: {exc}")
        return failures

    async def handle_charge_callback(self, payload: Any) -> ChargeResult:
        """Parse a push-to-pay result and hand it to the charge hooks."""
        try:
            callback = payload["Body"]["stkCallback"]
        except (KeyError, TypeError) as exc:
            raise MalformedCallbackError("Missing Body.stkCallback") from exc
        if not isinstance(callback, dict):
            raise MalformedCallbackError("Body.stkCallback must be an object")

        metadata_block = callback.get("CallbackMetadata") or {}
        result = ChargeResult(
            merchant_request_id=callback.get("MerchantRequestID"),
            checkout_request_id=callback.get("CheckoutRequestID"),
            result_code=_result_code(callback.get("ResultCode")),
            result_desc=callback.get("ResultDesc"),
            metadata=_flatten_items(
                metadata_block.get("Item") if isinstance(metadata_block, dict) else None,
                key_field="Name",
                value_field="Value",
            ),
        )

        if result.succeeded:
            logger.info(
                "Payment successful: checkout=%s merchant=%s amount=%s receipt=%s "
                "phone=%s date=%s",
                result.checkout_request_id,
                result.merchant_request_id,
                result.metadata.get("Amount"),
                result.metadata.get("MpesaReceiptNumber"),
                result.metadata.get("PhoneNumber"),
                result.metadata.get("TransactionDate"),
            )
        else:
            logger.info(
                "Payment failed: checkout=%s merchant=%s code=%s desc=%s",
                result.checkout_request_id,
                result.merchant_request_id,
                result.result_code,
                result.result_desc,
            )

        for hook in self._charge_callback_hooks:
            await hook(result)
        return result

    async def handle_payout_result(self, payload: Any) -> PayoutResult:
        """Settle the transaction matching the callback's conversation id."""
        try:
            body = payload["Result"]
        except (KeyError, TypeError) as exc:
            raise MalformedCallbackError("Missing Result") from exc
        if not isinstance(body, dict):
            raise MalformedCallbackError("Result must be an object")

        conversation_id = body.get("ConversationID")
        if not conversation_id:
            raise MalformedCallbackError("Missing ConversationID")

        parameters_block = body.get("ResultParameters") or {}
        result = PayoutResult(
            conversation_id=conversation_id,
            originator_conversation_id=body.get("OriginatorConversationID"),
            result_code=_result_code(body.get("ResultCode")),
            result_desc=body.get("ResultDesc"),
            parameters=_flatten_items(
                parameters_block.get("ResultParameter")
                if isinstance(parameters_block, dict)
                else None,
                key_field="Key",
                value_field="Value",
            ),
        )

        if result.succeeded:
            logger.info(
                "B2C payment successful: conversation=%s transaction=%s amount=%s "
                "recipient=%s",
                conversation_id,
                result.parameters.get("TransactionID"),
                result.parameters.get("TransactionAmount"),
                result.parameters.get("ReceiverPartyPublicName"),
            )
            updates: Dict[str, Any] = {
                "status": TransactionStatus.RELEASED,
                "mpesa_transaction_id": result.parameters.get("TransactionID"),
                "b2c_result_code": "0",
                "b2c_result_description": result.result_desc,
                "released_at": self._clock(),
            }
        else:
            logger.info(
                "B2C payment failed: conversation=%s code=%s desc=%s",
                conversation_id,
                result.result_code,
                result.result_desc,
            )
            updates = {
                "status": TransactionStatus.FAILED,
                "b2c_result_code": str(result.result_code),
                "b2c_result_description": result.result_desc,
            }

        updated = self._store.update_by_conversation_id(conversation_id, updates)
        if not updated:
            logger.warning("No transaction matches conversation %s", conversation_id)
        result.updated_records = len(updated)
        return result

    async def handle_payout_timeout(self, payload: Any) -> None:
        """Record that Daraja timed out a queued payout."""
        conversation_id = None
        if isinstance(payload, dict):
            body = payload.get("Result") if isinstance(payload.get("Result"), dict) else payload
            conversation_id = body.get("ConversationID")
        logger.warning("B2C payout timed out: conversation=%s", conversation_id)


__all__ = [
    "ChargeCallbackHook",
    "ChargeResult",
    "MalformedCallbackError",
    "PaymentConfigurationError",
    "PaymentRelay",
    "PaymentValidationError",
    "PayoutContext",
    "PayoutHook",
    "PayoutOutcome",
    "PayoutResult",
    "complete_linked_project",
]
