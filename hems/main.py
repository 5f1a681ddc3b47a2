"""
Main FastAPI application entry point.
"""
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from hems.core.config import settings
from hems.core.database import init_db
from hems.core.logging_config import configure_logging
from hems.api.auth import router as auth_router
from hems.api.exams import router as exams_router
from hems.api.attempts import router as attempts_router
from hems.api.coordinator import router as coordinator_router

configure_logging()
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting {settings.APP_NAME} ({settings.ENVIRONMENT})...")
    if not settings.is_testing():
        init_db()
        logger.info("Database initialized")
    yield
    logger.info(f"Shutting down {settings.APP_NAME}...")

app = FastAPI(title=settings.APP_NAME, version=settings.APP_VERSION, description=settings.APP_DESCRIPTION, lifespan=lifespan)
app.add_middleware(CORSMiddleware, allow_origins=settings.CORS_ORIGINS, allow_credentials=True, allow_methods=["*"], allow_headers=["*"])
app.include_router(auth_router, prefix=f"{settings.API_V1_PREFIX}/auth", tags=["auth"])
app.include_router(exams_router, prefix=f"{settings.API_V1_PREFIX}/exams", tags=["exams"])
app.include_router(attempts_router, prefix=f"{settings.API_V1_PREFIX}/attempts", tags=["attempts"])
app.include_router(coordinator_router, prefix=f"{settings.API_V1_PREFIX}/coordinator", tags=["coordinator"])

@app.get("/health")
def health(): return {"status": "ok"}
