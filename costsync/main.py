from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
import structlog

from costsync.shared.core.config import get_settings
from costsync.shared.core.logging import setup_logging
from costsync.shared.core.tracing import setup_tracing
from costsync.shared.core.exceptions import CostSyncException
from costsync.modules.ingestion.api.v1.sync import router as sync_router
from costsync.modules.reporting.api.v1.costs import router as costs_router
from costsync.modules.governance.api.v1.jobs import router as jobs_router

setup_logging()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info("app_starting", app=settings.APP_NAME, version=settings.VERSION, environment=settings.ENVIRONMENT)
    yield
    logger.info("app_shutting_down", app=settings.APP_NAME)
    from costsync.shared.db.session import engine
    await engine.dispose()


settings = get_settings()

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    lifespan=lifespan)

setup_tracing(app)
Instrumentator().instrument(app).expose(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CostSyncException)
async def costsync_exception_handler(request: Request, exc: CostSyncException):
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, code=exc.code, error=exc.message)
    else:
        logger.info("request_rejected", path=request.url.path, code=exc.code, error=exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": {"code": exc.code, "message": exc.message, "details": exc.details}},
    )


app.include_router(sync_router, prefix="/api/v1/costs")
app.include_router(costs_router, prefix="/api/v1/costs")
app.include_router(jobs_router, prefix="/api/v1/jobs")


@app.get("/health")
async def health_check():
    return {
        "status": "active",
        "app": settings.APP_NAME,
        "version": settings.VERSION,
    }
