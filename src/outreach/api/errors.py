"""Map domain errors raised by route handlers to HTTP responses."""

from __future__ import annotations

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from outreach.domain.errors import (
    CommandNotFoundError,
    CommandStateError,
    DuplicateTaskError,
    InvalidTransitionError,
    MissingContactError,
    MissingDraftError,
    OutreachError,
    StaleTaskError,
    TaskNotFoundError,
)

logger = structlog.get_logger()

_STATUS_CODES: list[tuple[type[OutreachError], int]] = [
    (TaskNotFoundError, 404),
    (CommandNotFoundError, 404),
    (DuplicateTaskError, 409),
    (InvalidTransitionError, 409),
    (StaleTaskError, 409),
    (CommandStateError, 409),
    (MissingDraftError, 422),
    (MissingContactError, 422),
]


def status_code_for(exc: OutreachError) -> int:
    for error_type, code in _STATUS_CODES:
        if isinstance(exc, error_type):
            return code
    return 400


async def outreach_error_handler(request: Request, exc: Exception) -> JSONResponse:
    code = status_code_for(exc) if isinstance(exc, OutreachError) else 500
    logger.info("request_rejected", error=type(exc).__name__, status_code=code, detail=str(exc))
    return JSONResponse(status_code=code, content={"detail": str(exc), "error": type(exc).__name__})


def register_error_handlers(app: FastAPI) -> None:
    """Install the domain error handler on *app*."""
    app.add_exception_handler(OutreachError, outreach_error_handler)
