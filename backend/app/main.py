import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Configure JSON logging before anything else logs at import time.
from app.logging_config import RequestIdMiddleware, configure_logging

# Read LOG_LEVEL directly because settings hasn't been imported yet
configure_logging(level=os.environ.get("LOG_LEVEL", "INFO"))

from app.api.drive import router as drive_router  # noqa: E402
from app.api.functions import router as functions_router  # noqa: E402
from app.api.jobs import router as jobs_router  # noqa: E402
from app.config import settings  # noqa: E402
from app.database import init_db  # noqa: E402
from app.services.job_service import get_job_service  # noqa: E402

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application starting up")
    init_db()
    logger.info("Job mirror initialised")
    yield
    logger.info("Application shutting down")
    service = get_job_service()
    await service.drain()
    await service.watcher.stop_all()


app = FastAPI(title="Carousel Jobs API", lifespan=lifespan)

# Request ID middleware goes first so every response carries X-Request-ID
app.add_middleware(RequestIdMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
)

app.include_router(jobs_router)
app.include_router(functions_router)
app.include_router(drive_router)


@app.get("/api/health")
async def health():
    return {"status": "ok"}
