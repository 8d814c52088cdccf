from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app.api.errors import handle_crm_error, handle_request_validation_error
from app.api.routes import router as api_router
from app.core.config import get_settings
from app.core.context import RequestContextMiddleware
from app.core.database import create_tables
from app.core.errors import CRMError
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("app.lifecycle")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    if settings.create_tables_on_startup:
        create_tables()
        logger.info("database.tables_created")
    logger.info("system.started")
    yield


app = FastAPI(title="CRM API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.add_exception_handler(CRMError, handle_crm_error)  # type: ignore[arg-type]
app.add_exception_handler(RequestValidationError, handle_request_validation_error)  # type: ignore[arg-type]
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("crm-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
