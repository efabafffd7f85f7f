"""
Application configuration models and helpers.

Centralizes settings management so the FastAPI app, the Daraja client and the
maintenance scripts share a consistent configuration surface.
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_FILE = ".env"

SANDBOX_BASE_URL = "https://sandbox.safaricom.co.ke"
PRODUCTION_BASE_URL = "https://api.safaricom.co.ke"


class MpesaSettings(BaseSettings):
    """Credentials and tuning for the M-Pesa Daraja API."""

    model_config = SettingsConfigDict(
        populate_by_name=True,
        extra="ignore",
        env_file=ENV_FILE,
        env_file_encoding="utf-8",
    )

    environment: Literal["sandbox", "production"] = Field(
        "sandbox", alias="MPESA_ENVIRONMENT"
    )
    consumer_key: str = Field(..., alias="MPESA_CONSUMER_KEY")
    consumer_secret: str = Field(..., alias="MPESA_CONSUMER_SECRET")
    short_code: str = Field(..., alias="MPESA_SHORTCODE")
    pass_key: str = Field(..., alias="MPESA_PASSKEY")
    initiator_name: Optional[str] = Field(
        None,
        alias="MPESA_INITIATOR_NAME",
        description="B2C initiator; payouts are refused when unset.",
    )
    security_credential: Optional[str] = Field(
        None,
        alias="MPESA_SECURITY_CREDENTIAL",
        description="Encrypted initiator password issued by the Daraja portal.",
    )
    callback_base_url: str = Field(
        "https://yourdomain.com/mpesa",
        alias="CALLBACK_BASE_URL",
        description="Public URL prefix under which provider callbacks arrive.",
    )
    request_timeout_seconds: float = Field(10.0, alias="MPESA_REQUEST_TIMEOUT")
    token_buffer_seconds: int = Field(
        60,
        alias="MPESA_TOKEN_BUFFER_SECONDS",
        description="How long before the declared expiry a token is refreshed.",
    )
    b2c_command_id: str = Field("BusinessPayment", alias="MPESA_B2C_COMMAND_ID")
    charge_minimum_amount: int = Field(1, alias="MPESA_CHARGE_MINIMUM")
    payout_minimum_amount: int = Field(10, alias="MPESA_PAYOUT_MINIMUM")

    @field_validator("environment", mode="before")
    @classmethod
    def _normalize_environment(cls, value: str) -> str:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("callback_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @property
    def base_url(self) -> str:
        if self.environment == "production":
            return PRODUCTION_BASE_URL
        return SANDBOX_BASE_URL


class AppSettings(BaseSettings):
    """Root settings object for the FastAPI application."""

    model_config = SettingsConfigDict(
        populate_by_name=True,
        extra="ignore",
        env_file=ENV_FILE,
        env_file_encoding="utf-8",
    )

    environment: str = Field("development", alias="APP_ENV")
    log_level: str = Field("INFO", alias="APP_LOG_LEVEL")
    host: str = Field("0.0.0.0", alias="HOST")
    port: int = Field(4000, alias="PORT")
    cors_allow_origins: str = Field(
        "*",
        alias="CORS_ALLOW_ORIGINS",
        description="Comma-separated list of allowed origins.",
    )
    record_store_path: str = Field("data/relay.db", alias="RECORD_STORE_PATH")
    trust_proxy_headers: bool = Field(
        False,
        alias="TRUST_PROXY_HEADERS",
        description="Derive the client address from X-Forwarded-For.",
    )
    mpesa: MpesaSettings = Field(default_factory=MpesaSettings)

    @property
    def cors_origins(self) -> list[str]:
        return [
            origin.strip()
            for origin in self.cors_allow_origins.split(",")
            if origin.strip()
        ]


@lru_cache()
def get_settings() -> AppSettings:
    """Return a cached settings object."""
    return AppSettings()  # type: ignore[call-arg]


__all__ = [
    "AppSettings",
    "MpesaSettings",
    "PRODUCTION_BASE_URL",
    "SANDBOX_BASE_URL",
    "get_settings",
]
