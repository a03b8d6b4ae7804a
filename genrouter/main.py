import logging
import math
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from genrouter.api.v1.router import api_v1_router
from genrouter.core.config import settings, validate_settings_for_production
from genrouter.core.exceptions import GatewayError
from genrouter.core.logging import setup_logging
from genrouter.core.metrics import PrometheusMiddleware, metrics_response
from genrouter.core.sentry import init_sentry
from genrouter.db.postgres import create_session_factory, create_usage_engine, init_usage_schema
from genrouter.gateway.gateway import RoutingGateway
from genrouter.gateway.ledger import SqlAlchemyUsageSink

# Configure logging before anything else
setup_logging()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    validate_settings_for_production()
    init_sentry()
    logger.info("Starting generation router...")

    engine = None
    if getattr(app.state, "gateway", None) is None:
        sink = None
        if settings.usage_db_url:
            engine = create_usage_engine(settings.usage_db_url, echo=settings.app_debug)
            await init_usage_schema(engine)
            sink = SqlAlchemyUsageSink(create_session_factory(engine))
            logger.info("Usage ledger: SQL sink ready")
        else:
            logger.warning("USAGE_DB_URL not set, usage records are kept in memory only")
        app.state.gateway = RoutingGateway.from_settings(settings, sink=sink)

    gateway: RoutingGateway = app.state.gateway
    await gateway.start()

    yield

    # Shutdown
    await gateway.stop()
    if engine is not None:
        await engine.dispose()
    logger.info("Generation router shut down")


app = FastAPI(
    title="genrouter",
    description="Generative-AI request router with failover, caching and tenant quotas",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/api/docs" if settings.app_debug else None,
    redoc_url="/api/redoc" if settings.app_debug else None,
)


@app.exception_handler(GatewayError)
async def _gateway_error_handler(request: Request, exc: GatewayError):
    headers = {}
    retry_after = exc.details.get("retry_after")
    if retry_after is not None:
        headers["Retry-After"] = str(max(math.ceil(retry_after), 1))
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()}, headers=headers)


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled %s on %s %s", type(exc).__name__, request.method, request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"error": {"code": "internal_error", "message": "Internal server error", "details": {}}},
    )


app.add_middleware(PrometheusMiddleware)

# API routes
app.include_router(api_v1_router)


@app.get("/metrics", include_in_schema=False)
async def metrics():
    return metrics_response()
