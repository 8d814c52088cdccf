from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.requests import Request

from app.context import get_correlation_id
from app.core.errors import CRMError


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def crm_error_response(request: Request, exc: CRMError, code: str) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=exc.message,
        details={"kind": exc.kind},
    )


async def handle_crm_error(request: Request, exc: CRMError) -> JSONResponse:
    # Errors raised by dependencies (auth, rbac) never reach the per-route handlers.
    return crm_error_response(request, exc, code="request_failed")


async def handle_request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Malformed bodies share the 400 envelope with the domain's own ValidationError.
    return error_response(
        request,
        status_code=400,
        code="request_validation_failed",
        message="Request body failed validation.",
        details={"kind": "InvalidInput", "errors": jsonable_encoder(exc.errors())},
    )
