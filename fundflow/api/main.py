from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from fundflow import __version__
from fundflow.common.logger import setup_logger
from fundflow.core.config import get_settings
from fundflow.api.routers import approvals, health

settings = get_settings()
setup_logger("fundflow", settings)

app = FastAPI(
    title=settings.app_name,
    description="Two-stage approval workflow for activity budget changes",
    version=__version__,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url] if not settings.debug else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router)
app.include_router(approvals.router, prefix="/api")


@app.get("/")
async def root():
    return {
        "name": settings.app_name,
        "version": __version__,
        "docs": "/docs" if settings.debug else None,
    }
