"""Exception handlers mapping escrow errors to JSON responses."""

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from agrotrust.escrow import EscrowError, FundsCapturedError, UnauthorizedError, ValidationError

from .logging_config import get_logger

logger = get_logger("agrotrust.errors")


async def escrow_error_handler(request: Request, exc: EscrowError) -> JSONResponse:
    """Render any EscrowError with its own status code."""
    if isinstance(exc, FundsCapturedError):
        logger.critical(f"{request.method} {request.url.path}: {exc.message}")
    elif exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc.code}: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path}: {exc.code}: {exc.message}")
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, UnauthorizedError) else None
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Schema mismatches are validation errors (400), like any other bad input."""
    errors = exc.errors()
    first = errors[0] if errors else {}
    loc = [str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path")]
    field = ".".join(loc) or None
    error = ValidationError(first.get("msg", "Invalid request."), field=field)
    error.details["errors"] = [
        {"loc": [str(p) for p in e.get("loc", ())], "msg": e.get("msg")} for e in errors
    ]
    return JSONResponse(status_code=error.status_code, content=error.to_dict())
