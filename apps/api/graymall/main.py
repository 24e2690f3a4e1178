"""
GrayMall API
Creator earnings, withdrawals and article checkout
"""

from contextlib import asynccontextmanager

import structlog

from graymall.core.config import settings
from graymall.middleware.logging import setup_structlog

# Configure structlog before any module grabs a logger
setup_structlog(json_logs=not settings.DEBUG)

logger = structlog.get_logger()

# =============================================================================
# Now import everything else (loggers will use the configuration above)
# =============================================================================
from fastapi import FastAPI, HTTPException, Request  # noqa: E402
from fastapi.exceptions import RequestValidationError  # noqa: E402
from fastapi.responses import JSONResponse  # noqa: E402

from graymall.api.v1 import router as api_v1_router  # noqa: E402
from graymall.core.database import close_db, init_db  # noqa: E402
from graymall.core.monitoring import MetricsMiddleware, setup_metrics_endpoint, setup_sentry  # noqa: E402
from graymall.middleware import RequestLoggingMiddleware, setup_cors  # noqa: E402
from graymall.schemas.response import ErrorCodes, ErrorMessages, create_error_response  # noqa: E402
from graymall.services.errors import ServiceError  # noqa: E402
from graymall.services.payments import StripeError, StripeServiceUnavailable  # noqa: E402

setup_sentry()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown"""
    logger.info("Starting GrayMall API", version=settings.APP_VERSION, environment=settings.ENVIRONMENT)

    # Production schema is managed by Alembic
    if settings.ENVIRONMENT == "development":
        await init_db()
        logger.info("Database initialized")

    yield

    logger.info("Shutting down GrayMall API")
    await close_db()


app = FastAPI(
    title="GrayMall API",
    description="""
    ## Creator earnings and payouts

    - **Checkout**: article purchases and reader subscriptions via Stripe Checkout
    - **Earnings**: author and affiliate balances derived from paid orders
    - **Withdrawals**: eligibility-gated payout requests, settled in monthly batches
    - **Webhooks**: Stripe payment, refund, subscription and Connect events
    """,
    version=settings.APP_VERSION,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url=None,
    openapi_url="/openapi.json" if settings.DEBUG else None,
    lifespan=lifespan,
)

setup_cors(app)

# Request logging middleware
app.add_middleware(RequestLoggingMiddleware)

# Prometheus metrics middleware
app.add_middleware(MetricsMiddleware)

# Setup Prometheus metrics endpoint (/metrics)
setup_metrics_endpoint(app)


# Exception handlers
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Convert validation errors to standardized error response format"""
    errors = []
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error["loc"] if loc != "body")
        errors.append({
            "field": field,
            "message": error["msg"],
            "type": error["type"],
        })

    return JSONResponse(
        status_code=422,
        content=create_error_response(
            code=ErrorCodes.VALIDATION_ERROR,
            message="Validation error",
            details={"errors": errors},
        ),
    )


@app.exception_handler(ServiceError)
async def service_exception_handler(request: Request, exc: ServiceError):
    """Business rule rejections keep their reason code"""
    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(
            code=exc.code,
            message=exc.message,
            details=exc.details or None,
        ),
    )


@app.exception_handler(StripeError)
async def stripe_exception_handler(request: Request, exc: StripeError):
    if isinstance(exc, StripeServiceUnavailable):
        status_code, code = 503, ErrorCodes.SERVICE_UNAVAILABLE
    else:
        status_code, code = 502, ErrorCodes.PAYMENT_ERROR

    logger.warning("Stripe error surfaced to client", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=status_code,
        content=create_error_response(code=code, message=ErrorMessages.PAYMENT_FAILED),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
        method=request.method,
    )
    return JSONResponse(
        status_code=500,
        content=create_error_response(
            code=ErrorCodes.INTERNAL_ERROR,
            message=ErrorMessages.INTERNAL_ERROR,
            details={"error": str(exc)} if settings.DEBUG else None,
        ),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Convert HTTPException to standardized error response format"""
    # api_error() already built the structured error
    if isinstance(exc.detail, dict) and "code" in exc.detail:
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    status_to_code = {
        400: ErrorCodes.INVALID_INPUT,
        401: ErrorCodes.UNAUTHORIZED,
        403: ErrorCodes.FORBIDDEN,
        404: ErrorCodes.NOT_FOUND,
        409: ErrorCodes.CONFLICT,
    }
    error_code = status_to_code.get(exc.status_code, ErrorCodes.INTERNAL_ERROR)

    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(
            code=error_code,
            message=exc.detail if isinstance(exc.detail, str) else str(exc.detail),
        ),
        headers=getattr(exc, "headers", None),
    )


# Mount API routes
app.include_router(api_v1_router, prefix="/api/v1")


@app.get("/", tags=["Status"])
async def root():
    """Root endpoint - API information"""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running",
        "api": "/api/v1",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "graymall.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        workers=1 if settings.DEBUG else settings.WORKERS,
    )
