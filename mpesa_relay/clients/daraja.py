"""
M-Pesa Daraja API client.

Thin, stateless wrapper around the provider endpoints. Token caching lives in
``mpesa_relay.services.token_cache``; every call here takes the bearer token
explicitly.
"""

from __future__ import annotations

import base64
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

import httpx

from fastapi import status

from mpesa_relay.core.config import MpesaSettings

DEFAULT_TOKEN_TTL_SECONDS = 3599
TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"


class AccessTokenError(Exception):
    """Raised when the provider does not issue a usable access token."""


class DarajaRequestError(Exception):
    """Raised when a Daraja endpoint fails or answers with an error status."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        body: Any = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    @property
    def detail(self) -> Any:
        """Provider error body when available, otherwise the message."""
        return self.body if self.body is not None else str(self)


def generate_password(
    short_code: str, pass_key: str, now: datetime | None = None
) -> Tuple[str, str]:
    """
    Build the time-varying STK password.

    Returns a tuple of (password, timestamp) where the password is the base64
    encoding of ``short_code + pass_key + timestamp``.
    """
    moment = now or datetime.now(timezone.utc)
    timestamp = moment.strftime(TIMESTAMP_FORMAT)
    raw = f"{short_code}{pass_key}{timestamp}".encode("utf-8")
    return base64.b64encode(raw).decode("utf-8"), timestamp


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


def _parse_ttl(raw: Any) -> int:
    try:
        ttl = int(float(raw))
    except (TypeError, ValueError):
        return DEFAULT_TOKEN_TTL_SECONDS
    return ttl if ttl > 0 else DEFAULT_TOKEN_TTL_SECONDS


class DarajaClient:
    """Issue token, STK push, STK query and B2C requests against Daraja."""

    TOKEN_PATH = "/oauth/v1/generate"
    STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
    STK_QUERY_PATH = "/mpesa/stkpushquery/v1/query"
    B2C_PAYMENT_PATH = "/mpesa/b2c/v3/paymentrequest"

    def __init__(
        self,
        settings: MpesaSettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._transport = transport

    @property
    def base_url(self) -> str:
        return self._settings.base_url

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._settings.base_url,
            timeout=self._settings.request_timeout_seconds,
            transport=self._transport,
        )

    async def fetch_access_token(self) -> Tuple[str, int]:
        """
        Exchange the consumer key and secret for a bearer token.

        Returns a tuple of (access_token, expires_in_seconds).
        """
        try:
            async with self._client() as client:
                response = await client.get(
                    self.TOKEN_PATH,
                    params={"grant_type": "client_credentials"},
                    auth=(self._settings.consumer_key, self._settings.consumer_secret),
                )
        except httpx.HTTPError as exc:
            raise AccessTokenError(f"Token request failed: {exc}") from exc

        if response.status_code != status.HTTP_200_OK:
            raise AccessTokenError(response.text)

        try:
            token_payload = response.json() or {}
        except ValueError as exc:
            raise AccessTokenError("Token endpoint returned a non-JSON body.") from exc

        access_token = token_payload.get("access_token")
        if not access_token:
            raise AccessTokenError("Access token missing in response.")

        return access_token, _parse_ttl(token_payload.get("expires_in"))

    async def stk_push(
        self, payload: Dict[str, Any], *, access_token: str
    ) -> Dict[str, Any]:
        """Submit a push-to-pay prompt to the payer's phone."""
        return await self._post(self.STK_PUSH_PATH, payload, access_token)

    async def stk_query(
        self, payload: Dict[str, Any], *, access_token: str
    ) -> Dict[str, Any]:
        """Query the state of a previously submitted push-to-pay request."""
        return await self._post(self.STK_QUERY_PATH, payload, access_token)

    async def b2c_payment_request(
        self, payload: Dict[str, Any], *, access_token: str
    ) -> Dict[str, Any]:
        """Submit a business-to-customer disbursement."""
        return await self._post(self.B2C_PAYMENT_PATH, payload, access_token)

    async def _post(
        self, path: str, payload: Dict[str, Any], access_token: str
    ) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {access_token}"}
        try:
            async with self._client() as client:
                response = await client.post(path, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise DarajaRequestError(f"Request to {path} failed: {exc}") from exc

        if response.status_code >= status.HTTP_400_BAD_REQUEST:
            raise DarajaRequestError(
                f"Daraja returned HTTP {response.status_code} for {path}",
                status_code=response.status_code,
                body=_response_body(response),
            )

        body = _response_body(response)
        if not isinstance(body, dict):
            raise DarajaRequestError(
                f"Unexpected response body from {path}",
                status_code=response.status_code,
                body=body,
            )
        return body


__all__ = [
    "AccessTokenError",
    "DarajaClient",
    "DarajaRequestError",
    "generate_password",
]
