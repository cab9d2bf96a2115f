from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import sentry_sdk
from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from sentry_sdk.integrations.fastapi import FastApiIntegration

from .api.routes import date_selection as date_selection_routes
from .config import APP_VERSION, SERVICE_NAME
from .db.core import init_db
from .health import health_checker
from .logging_config import configure_structlog, get_logger
from .metrics import PrometheusMiddleware, get_metrics
from .middleware import install_middleware
from .rate_limit import add_rate_limiting
from .settings import settings

configure_structlog(json_logs=not settings.DEBUG)
logger = get_logger(__name__)


def init_sentry() -> None:
    if not settings.SENTRY_DSN:
        return
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.SENTRY_ENVIRONMENT,
        release=settings.SENTRY_RELEASE or f"{SERVICE_NAME}@{APP_VERSION}",
        integrations=[FastApiIntegration()],
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        send_default_pii=False,
    )


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    await init_db()
    logger.info(
        "service_started",
        payment_provider=settings.PAYMENT_PROVIDER,
        deposits_enabled=settings.DEPOSITS_ENABLED,
        auth_bypass=settings.AUTH0_BYPASS,
    )
    yield
    logger.info("service_stopped")


def create_app() -> FastAPI:
    init_sentry()
    application = FastAPI(
        title="Trip Deposits API",
        version=APP_VERSION,
        description="Trip date selection and deposit checkout",
        lifespan=lifespan,
    )
    # last added runs first: metrics see the final status, including 429s
    install_middleware(application)
    add_rate_limiting(application)
    application.add_middleware(PrometheusMiddleware)

    application.include_router(date_selection_routes.router, prefix="/v1")
    date_selection_routes.register_error_handlers(application)

    @application.get("/health")
    async def health():
        report = await health_checker.check_all()
        code = 200 if report["status"] == "healthy" else 503
        return JSONResponse({**report, "service": SERVICE_NAME, "version": APP_VERSION}, code)

    @application.get("/metrics")
    def metrics():
        try:
            return get_metrics()
        except ValueError as exc:
            logger.exception("metrics_export_failed")
            raise HTTPException(status_code=503, detail="metrics unavailable") from exc

    return application


app = create_app()
