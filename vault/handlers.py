import logging

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .errors import VaultError
from .observability import ErrorRecord, LoggingSink

logger = logging.getLogger(__name__)

sink = LoggingSink()

def request_id_of(request: Request):
    return getattr(request.state, "request_id", None)

async def vault_exception_handler(request: Request, exc: VaultError):
    request_id = request_id_of(request)
    if exc.status_code >= 500:
        sink.record(
            ErrorRecord(
                kind=exc.kind,
                message=exc.message,
                request_id=request_id,
                context={"method": request.method, "path": request.url.path, **exc.context},
            )
        )
    else:
        logger.info(
            "%s %s rejected: %s",
            request.method,
            request.url.path,
            exc.kind,
            extra={"request_id": request_id, "context": exc.context},
        )
    return JSONResponse(status_code=exc.status_code, content=exc.payload())

async def validation_exception_handler(request: Request, exc: RequestValidationError):
    fields = [".".join(str(part) for part in error.get("loc", ())) for error in exc.errors()]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "validation_error", "detail": "Invalid request body", "fields": fields},
    )

def internal_error_response(request: Request, exc: Exception) -> JSONResponse:
    request_id = request_id_of(request)
    logger.error(
        "Unhandled exception %s %s",
        request.method,
        request.url.path,
        exc_info=(type(exc), exc, exc.__traceback__),
        extra={"request_id": request_id},
    )
    sink.record(
        ErrorRecord(
            kind="internal_error",
            message=type(exc).__name__,
            request_id=request_id,
            context={"method": request.method, "path": request.url.path},
        )
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "internal_error", "detail": "Internal server error", "request_id": request_id},
    )
