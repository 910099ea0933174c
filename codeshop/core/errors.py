from __future__ import annotations

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = structlog.get_logger()


class CodeshopError(Exception):
    status_code = 500


class NotFoundError(CodeshopError):
    status_code = 404


class ConflictError(CodeshopError):
    status_code = 409


class TrialAlreadyGrantedError(ConflictError):
    status_code = 400


class InvalidStateError(CodeshopError):
    status_code = 400


class InvalidInputError(CodeshopError):
    status_code = 400


class ReconciliationPendingError(CodeshopError):
    """Another delivery holds the issuance claim and has not linked a code yet."""

    status_code = 409


class UpstreamError(CodeshopError):
    status_code = 502


class UpstreamTimeoutError(UpstreamError):
    pass


class UpstreamFormatError(UpstreamError):
    pass


class PaymentGatewayError(UpstreamError):
    pass


class DispatchError(CodeshopError):
    pass


def setup_error_handlers(app: FastAPI) -> None:
    """Register JSON error envelopes: {success: false, message, ...}."""

    @app.exception_handler(CodeshopError)
    async def codeshop_error_handler(_request: Request, exc: CodeshopError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "message": str(exc)},
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "message": "Invalid request",
                "errors": [
                    {"loc": list(e.get("loc", [])), "msg": e.get("msg")} for e in exc.errors()
                ],
            },
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=exc,
        )
        return JSONResponse(
            status_code=500,
            content={"success": False, "message": "Internal server error", "error": str(exc)},
        )
