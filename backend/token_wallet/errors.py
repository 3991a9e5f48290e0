"""
Token Wallet Errors

Every handler-level failure is normalized to a stable {code, message}
envelope with an HTTP status taken from ERROR_CODES.
"""

import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .config import ERROR_CODES

logger = logging.getLogger(__name__)


class WalletError(Exception):
    """Raised for any token or purchase failure that should reach the client."""

    def __init__(self, code: str, message: Optional[str] = None, status_code: Optional[int] = None):
        default_status, default_message = ERROR_CODES.get(code, (500, "Unexpected error"))
        self.code = code
        self.message = message or default_message
        self.status_code = status_code or default_status
        super().__init__(f"{code}: {self.message}")

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class PaymentMismatchError(Exception):
    """Raised when a captured payment does not match the pending purchase."""
    pass


async def wallet_error_handler(request: Request, exc: WalletError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code} - {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Body or query validation failures use the same envelope as WalletError."""
    errors = exc.errors()
    detail = "; ".join(
        f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg')}" for err in errors
    )
    return await wallet_error_handler(request, WalletError("INVALID_REQUEST", detail or None))


def register_error_handlers(app: FastAPI):
    """Attach the envelope handlers to an app."""
    app.add_exception_handler(WalletError, wallet_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
