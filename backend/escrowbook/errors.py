# backend/escrowbook/errors.py
"""
Application error handlers.

Every error leaves the API as ``{"detail": {"message", "code", "details"}}``
so clients can branch on ``code`` (STALE_VERSION, SLOT_UNAVAILABLE, ...).
"""

import logging
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .core.exceptions import DomainException, RepositoryException

logger = logging.getLogger(__name__)


def _envelope(message: str, code: str, details: Any = None) -> Dict[str, Any]:
    return {"detail": {"message": message, "code": code, "details": details or {}}}


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(DomainException)
    async def domain_exception_handler(request: Request, exc: DomainException) -> JSONResponse:
        http_exc = exc.to_http_exception()
        if http_exc.status_code >= 500:
            logger.error(
                "Request failed: %s",
                exc.message,
                extra={"path": request.url.path, "code": exc.code},
            )
        return JSONResponse(
            status_code=http_exc.status_code,
            content=jsonable_encoder({"detail": http_exc.detail}),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content=jsonable_encoder(
                _envelope("Request validation failed", "VALIDATION_ERROR", {"errors": exc.errors()})
            ),
        )

    @app.exception_handler(RepositoryException)
    async def repository_exception_handler(
        request: Request, exc: RepositoryException
    ) -> JSONResponse:
        logger.error("Data access failed: %s", exc, extra={"path": request.url.path})
        return JSONResponse(
            status_code=503,
            content=_envelope("The booking store is unavailable", "STORE_UNAVAILABLE"),
        )
