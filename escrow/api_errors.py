"""
API error handling. Structured JSON errors with codes.

Every error response: {"error": {"code": "...", "message": "...", "details": {...}}}
"""

from fastapi import Request
from fastapi.responses import JSONResponse

from escrow.errors import (
    EscrowError, InsufficientLocked, InvalidListing, InvalidState,
    NotAuthorized,
)


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


def translate_engine_error(exc: EscrowError) -> APIError:
    """Translate engine exceptions to structured API errors."""
    msg = str(exc)

    if isinstance(exc, InsufficientLocked) and exc.internal:
        return APIError(500, "ledger_inconsistency", msg)

    if isinstance(exc, InvalidListing) and "not found" in msg:
        return APIError(404, "listing_not_found", msg)

    if isinstance(exc, InvalidState):
        return APIError(409, exc.code, msg)

    if isinstance(exc, NotAuthorized):
        return APIError(403, exc.code, msg)

    return APIError(400, exc.code, msg)
