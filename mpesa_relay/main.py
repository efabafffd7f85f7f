"""
FastAPI application entrypoint for the M-Pesa payment relay.
"""

from __future__ import annotations

from datetime import datetime, timezone
from http import HTTPStatus

from fastapi import FastAPI, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from mpesa_relay.api.routes import router as mpesa_router
from mpesa_relay.core.config import get_settings
from mpesa_relay.core.logging import configure_logging


def _summarize_errors(exc: RequestValidationError) -> list[dict]:
    return [
        {
            "loc": list(error.get("loc", ())),
            "msg": error.get("msg"),
            "type": error.get("type"),
        }
        for error in exc.errors()
    ]


async def _validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Malformed request bodies are client errors, reported as 400."""
    return JSONResponse(
        status_code=HTTPStatus.BAD_REQUEST,
        content={"detail": _summarize_errors(exc)},
    )


async def _not_found_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == HTTPStatus.NOT_FOUND and exc.detail == "Not Found":
        return JSONResponse(
            status_code=HTTPStatus.NOT_FOUND,
            content={"status": "error", "message": "Endpoint not found"},
        )
    return await http_exception_handler(request, exc)


def create_app() -> FastAPI:
    """Factory for the FastAPI application."""
    settings = get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(
        title="M-Pesa Payment Relay",
        version="0.1.0",
        description="Relay for M-Pesa STK push charges, B2C payouts and callbacks.",
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, _not_found_handler)

    @app.get("/", status_code=HTTPStatus.OK)
    async def root() -> dict:
        return {
            "status": "success",
            "message": "Mpesa Integration Service",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    app.include_router(mpesa_router, prefix="/mpesa")
    return app


app = create_app()


def run() -> None:  # pragma: no cover - server entry point
    """Serve the application with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "mpesa_relay.main:app",
        host=settings.host,
        port=settings.port,
        proxy_headers=settings.trust_proxy_headers,
    )


if __name__ == "__main__":  # pragma: no cover - script entry point
    run()


__all__ = ["app", "create_app", "run"]
