"""Settings provider for route dependencies."""

from mpesa_relay.core.config import AppSettings, get_settings


def get_app_settings() -> AppSettings:
    return get_settings()


__all__ = ["get_app_settings"]
