from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from sqlalchemy.exc import SQLAlchemyError

from subscription_engine.api.routes import router as api_router
from subscription_engine.business.subscription.errors import ConfigurationError, LifecycleError
from subscription_engine.core.config import get_settings
from subscription_engine.core.context import RequestContextMiddleware
from subscription_engine.logging import configure_logging
from subscription_engine.middleware.correlation_id import CorrelationIdMiddleware
from subscription_engine.middleware.rate_limit import SubscriptionMutationRateLimitMiddleware
from subscription_engine.middleware.request_logging import RequestLoggingMiddleware
from subscription_engine.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("subscription_engine.lifecycle")

INTERNAL_ERROR_BODY = {"success": False, "message": "Internal server error", "data": {}, "code": "INTERNAL_ERROR"}


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    if not (settings.razorpay_key_id and settings.razorpay_key_secret):
        logger.warning("gateway.credentials_missing", extra={"code": "RAZORPAY_NOT_CONFIGURED"})
    logger.info("app.started", extra={"status": settings.app_env})
    yield


app = FastAPI(title="Subscription Engine", version=get_settings().app_version, lifespan=lifespan)
app.add_middleware(SubscriptionMutationRateLimitMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)


@app.exception_handler(LifecycleError)
async def lifecycle_error_handler(request: Request, exc: LifecycleError) -> JSONResponse:
    extra = {"code": exc.code, "status_code": exc.status_code, "path": request.url.path}
    if isinstance(exc, ConfigurationError):
        logger.error("lifecycle.configuration_error", extra={**extra, "error": exc.message})
    else:
        logger.info("lifecycle.rejected", extra=extra)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error("lifecycle.database_error", exc_info=exc, extra={"path": request.url.path, "code": "INTERNAL_ERROR"})
    return JSONResponse(status_code=500, content=INTERNAL_ERROR_BODY)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    # Runs outside the middleware stack, so the correlation header is restored from request state.
    logger.error(
        "lifecycle.unhandled_error",
        exc_info=exc,
        extra={"path": request.url.path, "code": "INTERNAL_ERROR", "error": f"{type(exc).__name__}: {exc}"},
    )
    response = JSONResponse(status_code=500, content=INTERNAL_ERROR_BODY)
    correlation_id = getattr(request.state, "correlation_id", None)
    if correlation_id:
        response.headers["x-correlation-id"] = correlation_id
    return response


setup_otel(get_settings())

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
