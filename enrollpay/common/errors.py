"""Checkout error taxonomy and the JSON error body returned to clients.

Every error carries a stable machine code; the HTTP layer adds the request id
so a client report can be correlated with the service logs.
"""

from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from enrollpay.common.logging import logger, request_id_ctx, sanitize_error


class CheckoutError(Exception):
    """Base error rendered as `{code, error, message, requestId, ...}`."""

    status_code = 500

    def __init__(
        self,
        code: str,
        message: str = "",
        *,
        status_code: int | None = None,
        details: Any = None,
        headers: dict[str, str] | None = None,
        **fields: Any,
    ) -> None:
        super().__init__(message or code)
        self.code = code
        self.message = message or code.replace("_", " ")
        if status_code is not None:
            self.status_code = status_code
        self.details = details
        self.headers = headers or {}
        self.fields = fields


class ClientInputError(CheckoutError):
    status_code = 400


class StateConflictError(CheckoutError):
    status_code = 409


class UpstreamError(CheckoutError):
    status_code = 502


class ConfigurationError(CheckoutError):
    status_code = 500


class PersistenceError(CheckoutError):
    status_code = 500


def build_api_error_payload(
    code: str,
    message: str,
    request_id: str,
    details: Any = None,
    fields: dict[str, Any] | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "code": code,
        "error": code,
        "message": message,
        "requestId": request_id,
    }
    if details is not None:
        payload["details"] = details
    for key, value in (fields or {}).items():
        payload.setdefault(key, value)
    return payload


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "") or request_id_ctx.get() or "unknown"


def install_error_handlers(app: FastAPI) -> None:
    """Register handlers converting errors into the shared error body."""

    @app.exception_handler(CheckoutError)
    async def checkout_error_handler(request: Request, exc: CheckoutError):
        return JSONResponse(
            status_code=exc.status_code,
            content=build_api_error_payload(exc.code, exc.message, _request_id(request), exc.details, exc.fields),
            headers=exc.headers,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        details = [{"loc": list(err.get("loc", ())), "msg": err.get("msg", "")} for err in exc.errors()]
        return JSONResponse(
            status_code=400,
            content=build_api_error_payload(
                "invalid_payload", "Request body must be a JSON object.", _request_id(request), details
            ),
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error("unhandled_handler_error error=%s", sanitize_error(exc))
        return JSONResponse(
            status_code=500,
            content=build_api_error_payload("internal_error", "Unexpected internal error.", _request_id(request)),
        )
