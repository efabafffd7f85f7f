from __future__ import annotations

import base64
from pathlib import Path

import pytest

from mpesa_relay.clients.daraja import DarajaRequestError
from mpesa_relay.models.transaction import TransactionStatus
from mpesa_relay.schemas import (
    ChargeRequest,
    PayoutRequest,
    StatusQueryRequest,
)
from mpesa_relay.services.payments import (
    ChargeResult,
    MalformedCallbackError,
    PaymentConfigurationError,
    PaymentValidationError,
    PayoutContext,
)

from fakes import build_mpesa_settings, build_relay


def _payout_result(code: int, conversation_id: str = "AG_1") -> dict:
    parameters = [
        {"Key": "TransactionAmount", "Value": 1500},
        {"Key": "TransactionReceipt", "Value": "NLJ41HAY6Q"},
        {"Key": "ReceiverPartyPublicName", "Value": "254746221954 - John Doe"},
    ]
    if code == 0:
        parameters.append({"Key": "TransactionID", "Value": "NLJ41HAY6Q"})
    return {
        "Result": {
            "ResultType": 0,
            "ResultCode": code,
            "ResultDesc": "The service request is processed successfully."
            if code == 0
            else "The initiator information is invalid.",
            "OriginatorConversationID": "10571-7910404-1",
            "ConversationID": conversation_id,
            "TransactionID": "NLJ41HAY6Q",
            "ResultParameters": {"ResultParameter": parameters},
        }
    }


@pytest.mark.asyncio
async def test_charge_builds_signed_stk_payload(tmp_path: Path) -> None:
    relay, daraja, _ = build_relay(tmp_path)

    response = await relay.initiate_charge(
        ChargeRequest(phoneNumber="0746 221 954", amount=10.5, accountReference="INV-7")
    )

    assert response.checkout_request_id == "ws_CO_191220191020363925"
    payload = daraja.calls("stk_push")[0]
    assert payload["PartyA"] == payload["PhoneNumber"] == "254746221954"
    assert payload["PartyB"] == payload["BusinessShortCode"] == "174379"
    assert payload["Amount"] == 11
    assert payload["Timestamp"] == "20240102030405"
    assert base64.b64decode(payload["Password"]).decode() == "174379passkey20240102030405"
    assert payload["TransactionType"] == "CustomerPayBillOnline"
    assert payload["CallBackURL"] == "https://relay.example.com/mpesa/callback/charge"
    assert payload["AccountReference"] == "INV-7"
    assert payload["TransactionDesc"] == "Payment for services"
    assert daraja.requests[0][2] == "fake-access-token"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "request_body",
    [
        {"phoneNumber": "0746221954", "amount": 0},
        {"phoneNumber": "0746221954", "amount": -5},
        {"amount": 100},
        {"phoneNumber": "0746221954"},
    ],
)
async def test_invalid_charge_makes_no_provider_call(
    tmp_path: Path, request_body: dict
) -> None:
    relay, daraja, _ = build_relay(tmp_path)

    with pytest.raises(PaymentValidationError):
        await relay.initiate_charge(ChargeRequest(**request_body))

    assert daraja.requests == []
    assert daraja.token_calls == 0


@pytest.mark.asyncio
async def test_token_is_reused_across_requests(tmp_path: Path) -> None:
    relay, daraja, _ = build_relay(tmp_path)

    await relay.initiate_charge(ChargeRequest(phoneNumber="0746221954", amount=10))
    await relay.query_charge(StatusQueryRequest(checkoutRequestID="ws_CO_1"))

    assert daraja.token_calls == 1


@pytest.mark.asyncio
async def test_query_requires_checkout_id(tmp_path: Path) -> None:
    relay, daraja, _ = build_relay(tmp_path)

    with pytest.raises(PaymentValidationError):
        await relay.query_charge(StatusQueryRequest())
    assert daraja.requests == []


@pytest.mark.asyncio
async def test_query_returns_raw_provider_payload(tmp_path: Path) -> None:
    relay, daraja, _ = build_relay(tmp_path)

    body = await relay.query_charge(StatusQueryRequest(checkoutRequestID="ws_CO_1"))

    assert body == daraja.responses["stk_query"]
    payload = daraja.calls("stk_query")[0]
    assert payload["CheckoutRequestID"] == "ws_CO_1"
    assert payload["Timestamp"] == "20240102030405"


@pytest.mark.asyncio
async def test_payout_releases_transaction_and_completes_project(tmp_path: Path) -> None:
    relay, daraja, store = build_relay(tmp_path)
    store.create_transaction(transaction_id="tx-1", amount=1500)
    store.create_project(project_id="p-1")

    outcome = await relay.initiate_payout(
        PayoutRequest(
            phoneNumber="+254746221954",
            amount=1500,
            transaction={"id": "tx-1"},
            finalProjectId="p-1",
            originatorConversationID="order-77",
        )
    )

    assert outcome.side_effect_failures == []
    assert outcome.response.conversation_id == "AG_20191219_00005797af5d7d75f652"
    transaction = store.get_transaction("tx-1")
    assert transaction.status is TransactionStatus.RELEASED
    assert transaction.mpesa_conversation_id == "AG_20191219_00005797af5d7d75f652"
    assert store.get_project("p-1").status == "completed"

    payload = daraja.calls("b2c")[0]
    assert payload["OriginatorConversationID"] == "order-77"
    assert payload["InitiatorName"] == "testapi"
    assert payload["SecurityCredential"] == "security-credential"
    assert payload["CommandID"] == "BusinessPayment"
    assert payload["PartyA"] == "174379"
    assert payload["PartyB"] == "254746221954"
    assert payload["ResultURL"] == "https://relay.example.com/mpesa/callback/payout-result"
    assert payload["QueueTimeOutURL"] == "https://relay.example.com/mpesa/callback/payout-timeout"
    assert payload["Remarks"] == "Payment to freelancer"


@pytest.mark.asyncio
async def test_payout_generates_originator_id_when_omitted(tmp_path: Path) -> None:
    relay, daraja, store = build_relay(tmp_path)
    store.create_transaction(transaction_id="tx-1")

    await relay.initiate_payout(
        PayoutRequest(phoneNumber="0746221954", amount=50, transaction="tx-1")
    )
    await relay.initiate_payout(
        PayoutRequest(phoneNumber="0746221954", amount=50, transaction="tx-1")
    )

    first, second = (p["OriginatorConversationID"] for p in daraja.calls("b2c"))
    assert first and second and first != second


@pytest.mark.asyncio
async def test_project_failure_does_not_undo_release(tmp_path: Path) -> None:
    relay, _, store = build_relay(tmp_path)
    store.create_transaction(transaction_id="tx-1")

    outcome = await relay.initiate_payout(
        PayoutRequest(
            phoneNumber="0746221954",
            amount=100,
            transaction="tx-1",
            finalProjectId="p-missing",
        )
    )

    assert len(outcome.side_effect_failures) == 1
    assert "p-missing" in outcome.side_effect_failures[0]
    assert store.get_transaction("tx-1").status is TransactionStatus.RELEASED


@pytest.mark.asyncio
async def test_post_payout_hooks_run_in_order_and_fail_independently(
    tmp_path: Path,
) -> None:
    seen: list[str] = []

    async def broken_hook(context: PayoutContext) -> None:
        seen.append("broken")
        raise RuntimeError("notification service down")

    async def audit_hook(context: PayoutContext) -> None:
        seen.append(f"audit:{context.transaction_id}:{context.conversation_id}")

    relay, _, store = build_relay(tmp_path, post_payout_hooks=[broken_hook, audit_hook])
    store.create_transaction(transaction_id="tx-9")

    outcome = await relay.initiate_payout(
        PayoutRequest(phoneNumber="0746221954", amount=100, transaction="tx-9")
    )

    assert seen == ["broken", "audit:tx-9:AG_20191219_00005797af5d7d75f652"]
    assert outcome.side_effect_failures == ["broken_hook: notification service down"]


@pytest.mark.asyncio
async def test_payout_below_minimum_is_rejected(tmp_path: Path) -> None:
    relay, daraja, store = build_relay(tmp_path)
    store.create_transaction(transaction_id="tx-1")

    with pytest.raises(PaymentValidationError, match="10"):
        await relay.initiate_payout(
            PayoutRequest(phoneNumber="0746221954", amount=9, transaction="tx-1")
        )
    assert daraja.requests == []


@pytest.mark.asyncio
async def test_payout_requires_transaction_reference(tmp_path: Path) -> None:
    relay, daraja, _ = build_relay(tmp_path)

    with pytest.raises(PaymentValidationError):
        await relay.initiate_payout(PayoutRequest(phoneNumber="0746221954", amount=100))
    assert daraja.requests == []


@pytest.mark.asyncio
async def test_payout_requires_initiator_credentials(tmp_path: Path) -> None:
    settings = build_mpesa_settings(MPESA_INITIATOR_NAME="", MPESA_SECURITY_CREDENTIAL="")
    relay, daraja, store = build_relay(tmp_path, settings=settings)
    store.create_transaction(transaction_id="tx-1")

    with pytest.raises(PaymentConfigurationError):
        await relay.initiate_payout(
            PayoutRequest(phoneNumber="0746221954", amount=100, transaction="tx-1")
        )
    assert daraja.requests == []


@pytest.mark.asyncio
async def test_provider_failure_leaves_transaction_untouched(tmp_path: Path) -> None:
    relay, daraja, store = build_relay(tmp_path)
    store.create_transaction(transaction_id="tx-1")
    daraja.error = DarajaRequestError("boom", status_code=500, body={"errorCode": "500.003.02"})

    with pytest.raises(DarajaRequestError):
        await relay.initiate_payout(
            PayoutRequest(phoneNumber="0746221954", amount=100, transaction="tx-1")
        )
    assert store.get_transaction("tx-1").status is TransactionStatus.PENDING


@pytest.mark.asyncio
async def test_successful_payout_result_releases_matching_record(tmp_path: Path) -> None:
    relay, _, store = build_relay(tmp_path)
    store.create_transaction(transaction_id="tx-1")
    store.update_transaction(
        "tx-1",
        {"status": TransactionStatus.HELD_IN_ESCROW, "mpesa_conversation_id": "AG_1"},
    )

    result = await relay.handle_payout_result(_payout_result(0))

    assert result.succeeded
    assert result.updated_records == 1
    assert result.parameters["TransactionAmount"] == 1500
    record = store.get_transaction("tx-1")
    assert record.status is TransactionStatus.RELEASED
    assert record.mpesa_transaction_id == "NLJ41HAY6Q"
    assert record.b2c_result_code == "0"
    assert record.b2c_result_description == "The service request is processed successfully."
    assert record.released_at is not None


@pytest.mark.asyncio
async def test_failed_payout_result_marks_record_failed(tmp_path: Path) -> None:
    relay, _, store = build_relay(tmp_path)
    store.create_transaction(transaction_id="tx-1")
    store.update_transaction("tx-1", {"mpesa_conversation_id": "AG_1"})

    result = await relay.handle_payout_result(_payout_result(2001))

    assert not result.succeeded
    record = store.get_transaction("tx-1")
    assert record.status is TransactionStatus.FAILED
    assert record.b2c_result_code == "2001"
    assert record.b2c_result_description == "The initiator information is invalid."


@pytest.mark.asyncio
async def test_payout_result_without_match_updates_nothing(tmp_path: Path) -> None:
    relay, _, _ = build_relay(tmp_path)

    result = await relay.handle_payout_result(_payout_result(0, conversation_id="AG_x"))

    assert result.updated_records == 0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [None, {}, {"Result": "nope"}, {"Result": {"ResultCode": 0}}, {"Result": {"ConversationID": "AG_1", "ResultCode": "x"}}],
)
async def test_malformed_payout_result_is_rejected(tmp_path: Path, payload) -> None:
    relay, _, _ = build_relay(tmp_path)

    with pytest.raises(MalformedCallbackError):
        await relay.handle_payout_result(payload)


@pytest.mark.asyncio
async def test_charge_callback_flattens_metadata_and_runs_hooks(tmp_path: Path) -> None:
    received: list[ChargeResult] = []

    async def record(result: ChargeResult) -> None:
        received.append(result)

    relay, _, _ = build_relay(tmp_path, charge_callback_hooks=[record])
    payload = {
        "Body": {
            "stkCallback": {
                "MerchantRequestID": "29115-34620561-1",
                "CheckoutRequestID": "ws_CO_191220191020363925",
                "ResultCode": 0,
                "ResultDesc": "The service request is processed successfully.",
                "CallbackMetadata": {
                    "Item": [
                        {"Name": "Amount", "Value": 1.0},
                        {"Name": "MpesaReceiptNumber", "Value": "NLJ7RT61SV"},
                        {"Name": "Balance"},
                        {"Name": "TransactionDate", "Value": 20191219102115},
                        {"Name": "PhoneNumber", "Value": 254708374149},
                    ]
                },
            }
        }
    }

    result = await relay.handle_charge_callback(payload)

    assert result.succeeded
    assert result.metadata["MpesaReceiptNumber"] == "NLJ7RT61SV"
    assert result.metadata["Balance"] is None
    assert received == [result]


@pytest.mark.asyncio
async def test_cancelled_charge_callback_is_parsed(tmp_path: Path) -> None:
    relay, _, _ = build_relay(tmp_path)

    result = await relay.handle_charge_callback(
        {
            "Body": {
                "stkCallback": {
                    "MerchantRequestID": "1",
                    "CheckoutRequestID": "ws_CO_2",
                    "ResultCode": 1032,
                    "ResultDesc": "Request cancelled by user",
                }
            }
        }
    )

    assert not result.succeeded
    assert result.metadata == {}
