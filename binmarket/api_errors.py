"""
API error handling. Structured JSON errors with codes.

Every error response: {"error": {"code": "...", "message": "...", "details": {...}}}
"""

from fastapi import Request
from fastapi.responses import JSONResponse

from binmarket import errors


class APIError(Exception):
    """Structured API error with HTTP status and machine-readable code."""

    def __init__(self, status: int, code: str, message: str,
                 details: dict | None = None):
        self.status = status
        self.code = code
        self.message = message
        self.details = details or {}

    def response(self) -> JSONResponse:
        return JSONResponse(
            status_code=self.status,
            content={"error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }},
        )


async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
    return exc.response()


# Most specific first: InsufficientCollateral before InsufficientBalance.
_STATUS: list[tuple[type, int]] = [
    (errors.MarketNotFound, 404),
    (errors.AccountNotFound, 404),
    (errors.NotOwner, 403),
    (errors.CustodyCaller, 403),
    (errors.AlreadyInitialized, 409),
    (errors.AlreadyResolved, 409),
    (errors.ReentrantCall, 409),
    (errors.NotOpen, 409),
    (errors.NotResolved, 409),
    (errors.PayoutFailed, 502),
    (errors.ArithmeticOverflow, 422),
    (errors.ArithmeticUnderflow, 422),
]


def translate_engine_error(exc: Exception) -> APIError:
    """Translate engine exceptions to structured API errors."""
    msg = str(exc)

    if isinstance(exc, errors.MarketError):
        status = next((s for cls, s in _STATUS if isinstance(exc, cls)), 400)
        return APIError(status, exc.code, msg)

    return APIError(400, "bad_request", msg)
