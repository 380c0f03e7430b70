"""
TutorChat - Main FastAPI Application
Real-time messaging between students and instructors.
"""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import settings
from .database import init_db, close_db
from .errors import MessagingError
from .routers import (
    attachments_router,
    conversations_router,
    events_router,
    files_router,
    messages_router,
    participants_router,
)
from .services.realtime import get_channel_provider


logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    await init_db()

    # Create upload directory
    os.makedirs(settings.UPLOAD_DIR, exist_ok=True)
    logger.info("%s %s started", settings.APP_NAME, settings.APP_VERSION)

    yield

    # Shutdown
    await get_channel_provider().close()
    await close_db()


# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Real-time one-to-one messaging between students and instructors",
    lifespan=lifespan
)


# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, specify exact origins
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(MessagingError)
async def messaging_error_handler(request: Request, exc: MessagingError):
    if exc.status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Include routers
app.include_router(conversations_router)
app.include_router(messages_router)
app.include_router(events_router)
app.include_router(attachments_router)
app.include_router(files_router)
app.include_router(participants_router)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION
    }


@app.get("/api")
async def api_info():
    """API information endpoint."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "endpoints": {
            "conversations": "/api/conversations",
            "messages": "/api/messages",
            "attachments": "/api/attachments",
            "files": "/api/files",
            "participants": "/api/participants"
        }
    }
