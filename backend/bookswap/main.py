"""
FastAPI application entry point.

WHAT: Main application setup and wiring
WHY: Initialize all components and routes
HOW: Create FastAPI app, register middleware, routers, handlers; the
     negotiation service graph is built once and held on app.state
"""

from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from .core.config import settings
from .core.database import init_db, close_db
from .services.negotiation import NegotiationService, build_negotiation_service
from .notifications.transport_factory import reset_transport
from .utils.logger import setup_logging, get_logger
from .middleware.error_handler import register_exception_handlers
from .api.v1.router import api_router

logger = get_logger(__name__)


def create_app(service: Optional[NegotiationService] = None) -> FastAPI:
    """
    Build the application.

    Args:
        service: Pre-wired service (tests inject one bound to a scratch database)
    """
    owns_service = service is None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan manager.

        WHAT: Startup and shutdown logic
        WHY: Create tables, close connections and HTTP clients cleanly
        HOW: Async context manager for FastAPI lifespan
        """
        # Startup
        logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
        init_db(app.state.service.engine)
        logger.info("Application startup complete")

        yield

        # Shutdown
        logger.info("Shutting down application")
        if owns_service:
            reset_transport()
            close_db(app.state.service.engine)
        logger.info("Application shutdown complete")

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        lifespan=lifespan
    )
    app.state.service = service or build_negotiation_service()

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_cors_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Register exception handlers
    register_exception_handlers(app)

    # Include API router
    app.include_router(api_router)

    @app.get("/")
    def root():
        """Root endpoint."""
        return {
            "app": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "status": "running"
        }

    return app


# Setup logging
setup_logging()
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "bookswap.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG
    )
