"""
FastAPI routes for the M-Pesa payment relay.
"""

from __future__ import annotations

import json
import logging
import math
from contextlib import contextmanager
from datetime import datetime, timezone
from http import HTTPStatus
from typing import Annotated, Any, Callable, Iterator

from fastapi import APIRouter, Depends, HTTPException, Request

from mpesa_relay.clients.daraja import AccessTokenError, DarajaRequestError
from mpesa_relay.core.config import AppSettings
from mpesa_relay.dependencies import (
    get_access_token_cache,
    get_app_settings,
    get_charge_rate_limiter,
    get_payment_relay,
    get_query_rate_limiter,
)
from mpesa_relay.schemas import (
    CallbackAcknowledgement,
    ChargeRequest,
    ChargeResponse,
    PayoutRequest,
    PayoutResponse,
    PhoneValidationRequest,
    PhoneValidationResponse,
    StatusQueryRequest,
)
from mpesa_relay.services import (
    AccessTokenCache,
    PaymentConfigurationError,
    PaymentRelay,
    PaymentValidationError,
    RateLimiter,
)
from mpesa_relay.services.rate_limit import client_address
from mpesa_relay.utils.phone import format_phone_number, is_valid_msisdn

router = APIRouter()
logger = logging.getLogger(__name__)

_PLACEHOLDER_MARKER = "your_"


def _acknowledgement() -> dict:
    return CallbackAcknowledgement().model_dump(by_alias=True)


def _rate_limited(
    limiter_dependency: Callable[[], RateLimiter],
) -> Callable[..., Any]:
    """Build a dependency that rejects callers over the limiter's budget."""

    # Annotations are strings here; the closure variable must stay in the default.
    async def enforce(
        request: Request,
        limiter: RateLimiter = Depends(limiter_dependency),
        settings: AppSettings = Depends(get_app_settings),
    ) -> None:
        key = client_address(request, trust_proxy_headers=settings.trust_proxy_headers)
        retry_after = limiter.hit(key)
        if retry_after is None:
            return
        retry_seconds = max(int(math.ceil(retry_after)), 1)
        raise HTTPException(
            status_code=HTTPStatus.TOO_MANY_REQUESTS,
            detail={
                "status": "error",
                "message": limiter.message,
                "retryAfter": retry_seconds,
            },
            headers={"Retry-After": str(retry_seconds)},
        )

    return enforce


enforce_charge_rate_limit = _rate_limited(get_charge_rate_limiter)
enforce_query_rate_limit = _rate_limited(get_query_rate_limiter)


@contextmanager
def _provider_errors(action: str) -> Iterator[None]:
    """Translate relay exceptions into HTTP errors for ``action``."""
    try:
        yield
    except PaymentValidationError as exc:
        raise HTTPException(
            status_code=HTTPStatus.BAD_REQUEST, detail=str(exc)
        ) from exc
    except AccessTokenError as exc:
        logger.error("%s: access token unavailable: %s", action, exc)
        raise HTTPException(
            status_code=HTTPStatus.INTERNAL_SERVER_ERROR,
            detail={"message": action, "error": "Failed to generate access token"},
        ) from exc
    except DarajaRequestError as exc:
        logger.error("%s: %s", action, exc.detail)
        raise HTTPException(
            status_code=HTTPStatus.INTERNAL_SERVER_ERROR,
            detail={"message": action, "error": exc.detail},
        ) from exc
    except PaymentConfigurationError as exc:
        logger.error("%s: %s", action, exc)
        raise HTTPException(
            status_code=HTTPStatus.INTERNAL_SERVER_ERROR,
            detail={"message": action, "error": str(exc)},
        ) from exc


@router.get("/health", status_code=HTTPStatus.OK)
async def healthcheck(
    settings: Annotated[AppSettings, Depends(get_app_settings)],
) -> dict:
    """Simple health endpoint for monitoring."""
    return {
        "status": "success",
        "message": "M-Pesa service is running",
        "environment": settings.mpesa.environment,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.post(
    "/charge",
    response_model=ChargeResponse,
    status_code=HTTPStatus.OK,
    dependencies=[Depends(enforce_charge_rate_limit)],
)
async def initiate_charge(
    payload: ChargeRequest,
    relay: Annotated[PaymentRelay, Depends(get_payment_relay)],
) -> ChargeResponse:
    """Prompt the payer's phone to authorize a payment."""
    with _provider_errors("Failed to initiate STK Push"):
        return await relay.initiate_charge(payload)


@router.post(
    "/query",
    status_code=HTTPStatus.OK,
    dependencies=[Depends(enforce_query_rate_limit)],
)
async def query_charge_status(
    payload: StatusQueryRequest,
    relay: Annotated[PaymentRelay, Depends(get_payment_relay)],
) -> dict:
    """Return Daraja's status payload for a push-to-pay request."""
    with _provider_errors("Failed to query transaction"):
        return await relay.query_charge(payload)


@router.post("/payout", response_model=PayoutResponse, status_code=HTTPStatus.OK)
async def initiate_payout(
    payload: PayoutRequest,
    relay: Annotated[PaymentRelay, Depends(get_payment_relay)],
) -> PayoutResponse:
    """Disburse funds to a recipient and settle the referenced transaction."""
    with _provider_errors("Failed to initiate B2C payment"):
        outcome = await relay.initiate_payout(payload)
    if outcome.side_effect_failures:
        logger.warning(
            "Payout %s accepted with side-effect failures: %s",
            outcome.response.conversation_id,
            outcome.side_effect_failures,
        )
    return outcome.response


def _callback_relay(request: Request) -> PaymentRelay:
    # Resolved inside the callback's try block so a relay that cannot be
    # built (e.g. unreachable record store) still yields an acknowledgement.
    factory = request.app.dependency_overrides.get(
        get_payment_relay, get_payment_relay
    )
    return factory()


@router.post("/callback/charge", status_code=HTTPStatus.OK)
async def charge_callback(request: Request) -> dict:
    """Receive the push-to-pay result. Daraja always gets an acknowledgement."""
    try:
        payload = await request.json()
        logger.info("STK push callback received: %s", json.dumps(payload))
        await _callback_relay(request).handle_charge_callback(payload)
    except Exception:  # pylint: disable=broad-except
        logger.exception("STK push callback processing failed")
    return _acknowledgement()


@router.post("/callback/payout-result", status_code=HTTPStatus.OK)
async def payout_result_callback(request: Request) -> dict:
    """Receive the B2C result and settle the matching transaction."""
    try:
        payload = await request.json()
        logger.info("B2C result callback received: %s", json.dumps(payload))
        await _callback_relay(request).handle_payout_result(payload)
    except Exception:  # pylint: disable=broad-except
        logger.exception("B2C result callback processing failed")
    return _acknowledgement()


@router.post("/callback/payout-timeout", status_code=HTTPStatus.OK)
async def payout_timeout_callback(request: Request) -> dict:
    """Receive a B2C queue timeout notification."""
    try:
        payload = await request.json()
        logger.info("B2C timeout callback received: %s", json.dumps(payload))
        await _callback_relay(request).handle_payout_timeout(payload)
    except Exception:  # pylint: disable=broad-except
        logger.exception("B2C timeout callback processing failed")
    return _acknowledgement()


@router.post(
    "/validate-phone",
    response_model=PhoneValidationResponse,
    status_code=HTTPStatus.OK,
)
async def validate_phone(payload: PhoneValidationRequest) -> PhoneValidationResponse:
    """Normalize a phone number and check it is a 12-digit Kenyan MSISDN."""
    if not payload.phone_number:
        raise HTTPException(
            status_code=HTTPStatus.BAD_REQUEST, detail="Phone number is required"
        )

    formatted = format_phone_number(payload.phone_number)
    if not is_valid_msisdn(formatted):
        raise HTTPException(
            status_code=HTTPStatus.BAD_REQUEST, detail="Invalid Kenyan phone number"
        )

    return PhoneValidationResponse(
        original=payload.phone_number, formatted=formatted, isValid=True
    )


def _preview(value: str | None) -> str:
    if not value:
        return "NOT SET"
    return f"{value[:10]}..."


@router.get("/debug-config", status_code=HTTPStatus.OK)
async def debug_config(
    settings: Annotated[AppSettings, Depends(get_app_settings)],
) -> dict:
    """Report which credentials are configured without revealing them."""
    mpesa = settings.mpesa
    checks = {
        "Consumer Key": mpesa.consumer_key,
        "Consumer Secret": mpesa.consumer_secret,
        "Shortcode": mpesa.short_code,
        "Passkey": mpesa.pass_key,
        "Initiator Name": mpesa.initiator_name,
        "Security Credential": mpesa.security_credential,
    }
    issues = [
        f"{label} is not set or is a placeholder"
        for label, value in checks.items()
        if not value or _PLACEHOLDER_MARKER in value
    ]

    return {
        "status": "warning" if issues else "success",
        "message": "Configuration issues found" if issues else "Configuration looks good",
        "config": {
            "environment": mpesa.environment,
            "baseUrl": mpesa.base_url,
            "callbackBaseUrl": mpesa.callback_base_url,
            "shortCode": mpesa.short_code or "NOT SET",
            "consumerKeyPreview": _preview(mpesa.consumer_key),
            "consumerSecretPreview": _preview(mpesa.consumer_secret),
            "hasPassKey": bool(mpesa.pass_key),
            "hasInitiator": bool(mpesa.initiator_name),
            "hasSecurityCredential": bool(mpesa.security_credential),
        },
        "issues": issues,
    }


@router.get("/test-token", status_code=HTTPStatus.OK)
async def test_token(
    token_cache: Annotated[AccessTokenCache, Depends(get_access_token_cache)],
) -> dict:
    """Check that the configured credentials can obtain an access token."""
    try:
        access_token = await token_cache.get_token()
    except AccessTokenError as exc:
        raise HTTPException(
            status_code=HTTPStatus.INTERNAL_SERVER_ERROR,
            detail={"message": "Failed to generate access token", "error": str(exc)},
        ) from exc

    return {
        "status": "success",
        "message": "Access token generated successfully",
        "tokenPreview": f"{access_token[:20]}...",
        "tokenLength": len(access_token),
    }


__all__ = ["router"]
