"""Courier Dispatch - order-to-partner assignment API"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from courier_dispatch.core.config import get_settings
from courier_dispatch.core.logging import configure_logging, logger
from courier_dispatch.routers import dispatch, metrics


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json)
    logger.info(
        "Courier Dispatch API starting",
        version="0.1.0",
        mode=settings.normalized_app_mode(),
        capacity_ceiling=settings.capacity_ceiling,
        db_path=settings.dispatch_db_path,
    )
    yield
    logger.info("Courier Dispatch API shutting down")


app = FastAPI(
    title="Courier Dispatch API",
    description="Order intake, partner matching, delivery lifecycle and assignment metrics",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(dispatch.router)
app.include_router(metrics.router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Courier Dispatch API",
        "version": "0.1.0",
        "endpoints": {
            "dispatch": "/dispatch",
            "metrics": "/metrics",
        },
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}
