"""
API error handling. Structured JSON errors with codes.

Every error response: {"error": {"code": "...", "message": "...", "details": {...}}}
"""

from fastapi import Request
from fastapi.responses import JSONResponse

from amm.errors import AMMError, ErrorKind, MarketNotFound


# HTTP status per engine error kind
_STATUS: dict[ErrorKind, int] = {
    ErrorKind.INVALID_ARGUMENT: 400,
    ErrorKind.NOT_READY: 409,
    ErrorKind.ALREADY_TERMINAL: 409,
    ErrorKind.AUTHORIZATION: 403,
    ErrorKind.ECONOMIC: 422,
    ErrorKind.INTERNAL_INVARIANT: 500,
}


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


def _jsonable(value):
    # Wad amounts can exceed 2**53; send them as strings.
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return str(value)
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    return value


def translate_engine_error(exc: AMMError) -> APIError:
    """Translate engine exceptions to structured API errors."""
    status = 404 if isinstance(exc, MarketNotFound) else _STATUS[exc.kind]
    details = {k: _jsonable(v) for k, v in exc.details.items()}
    details["kind"] = exc.kind.value
    return APIError(status, exc.code, exc.message, details)
