"""Translate domain errors into the JSON error envelope."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ..domain.errors import AccountError

logger = logging.getLogger(__name__)


def _http_error_from_account_error(exc: AccountError) -> JSONResponse:
    body: dict[str, str] = {"message": exc.message}
    if exc.error:
        body["error"] = exc.error
    return JSONResponse(status_code=exc.status_code, content=body)


async def account_error_handler(request: Request, exc: AccountError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return _http_error_from_account_error(exc)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report malformed request bodies and parameters in the same envelope as domain errors."""
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()))
    detail = f"{location}: {first.get('msg', 'invalid value')}" if location else first.get("msg", "")
    body: dict[str, str] = {"message": "Invalid request"}
    if detail:
        body["error"] = detail
    return JSONResponse(status_code=400, content=body)


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AccountError, account_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
