"""Service layer exports."""

from .payments import (
    PaymentConfigurationError,
    PaymentRelay,
    PaymentValidationError,
    PayoutOutcome,
)
from .rate_limit import RateLimiter
from .token_cache import AccessTokenCache

__all__ = [
    "AccessTokenCache",
    "PaymentConfigurationError",
    "PaymentRelay",
    "PaymentValidationError",
    "PayoutOutcome",
    "RateLimiter",
]
