"""
Factory functions to provide shared clients and services as FastAPI dependencies.
"""

from functools import lru_cache

from mpesa_relay.clients import DarajaClient, SQLiteRecordStore
from mpesa_relay.core.config import get_settings
from mpesa_relay.services import AccessTokenCache, PaymentRelay, RateLimiter

QUERY_RATE_LIMIT = 4
CHARGE_RATE_LIMIT = 3
RATE_LIMIT_WINDOW_SECONDS = 60.0


@lru_cache()
def get_daraja_client() -> DarajaClient:
    """Provide the Daraja API client."""
    return DarajaClient(get_settings().mpesa)


@lru_cache()
def get_access_token_cache() -> AccessTokenCache:
    """Provide the process-wide access token cache."""
    settings = get_settings()
    return AccessTokenCache(
        get_daraja_client(),
        buffer_seconds=settings.mpesa.token_buffer_seconds,
    )


@lru_cache()
def get_record_store() -> SQLiteRecordStore:
    """Provide shared SQLite record store."""
    return SQLiteRecordStore(get_settings().record_store_path)


@lru_cache()
def get_payment_relay() -> PaymentRelay:
    """Build the payment relay using configured clients."""
    return PaymentRelay(
        daraja_client=get_daraja_client(),
        token_cache=get_access_token_cache(),
        record_store=get_record_store(),
        settings=get_settings().mpesa,
    )


@lru_cache()
def get_query_rate_limiter() -> RateLimiter:
    """Daraja allows 5 status queries per minute; stay one below."""
    return RateLimiter(
        name="stk-query",
        max_requests=QUERY_RATE_LIMIT,
        window_seconds=RATE_LIMIT_WINDOW_SECONDS,
    )


@lru_cache()
def get_charge_rate_limiter() -> RateLimiter:
    return RateLimiter(
        name="stk-push",
        max_requests=CHARGE_RATE_LIMIT,
        window_seconds=RATE_LIMIT_WINDOW_SECONDS,
        message="Too many payment requests. Please wait.",
    )


__all__ = [
    "get_access_token_cache",
    "get_charge_rate_limiter",
    "get_daraja_client",
    "get_payment_relay",
    "get_query_rate_limiter",
    "get_record_store",
]
