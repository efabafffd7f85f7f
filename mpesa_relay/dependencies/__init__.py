"""Expose dependency helpers for FastAPI routers."""

from .clients import (
    get_access_token_cache,
    get_charge_rate_limiter,
    get_daraja_client,
    get_payment_relay,
    get_query_rate_limiter,
    get_record_store,
)
from .config import get_app_settings

__all__ = [
    "get_access_token_cache",
    "get_app_settings",
    "get_charge_rate_limiter",
    "get_daraja_client",
    "get_payment_relay",
    "get_query_rate_limiter",
    "get_record_store",
]
